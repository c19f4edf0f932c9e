"""
Shared session handling for repositories.
"""

from typing import Callable, Optional, TypeVar

from sqlalchemy.engine import Engine
from sqlmodel import Session

T = TypeVar("T")


class BaseRepository:
    """
    Base for repositories bound to an engine.

    Every public method accepts an optional session for transaction reuse.
    With a caller-owned session, writes are flushed and the caller commits.
    Otherwise the repository opens a short-lived session and commits itself.
    """

    def __init__(self, engine: Engine):
        self.engine = engine

    def _run(self, fn: Callable[[Session], T], session: Optional[Session] = None, write: bool = False) -> T:
        if session is not None:
            result = fn(session)
            if write:
                session.flush()
            return result

        with Session(self.engine, expire_on_commit=False) as sess:
            result = fn(sess)
            if write:
                sess.commit()
            return result
