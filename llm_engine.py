"""
LLM Engine - chat model access for the market analyzer and the assistant.
Talks to any OpenAI-compatible endpoint: a hosted API ("cloud") or a local
Ollama server ("local").
"""

from typing import List, Literal, Optional, Tuple
from langchain_openai import ChatOpenAI
from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage
import logging

from config import Settings
from errors import ValidationError
from prompts import get_system_prompt

logger = logging.getLogger(__name__)

LLMMode = Literal["cloud", "local"]


class LLMClient:
    """
    Thin wrapper over ChatOpenAI.

    Endpoint, model and key come from Settings unless overridden. Requests are
    bounded by `analysis_timeout_seconds`; retries are left to the caller.
    """

    def __init__(
        self,
        settings: Settings,
        mode: Optional[LLMMode] = None,
        model_name: Optional[str] = None,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        temperature: float = 0.2,
        max_tokens: Optional[int] = None,
        language: Optional[str] = None
    ):
        """
        Args:
            settings: Application settings supplying defaults
            mode: "cloud" or "local"; defaults to settings.llm_mode
            model_name: Overrides the configured model
            base_url: Overrides the configured endpoint
            api_key: Overrides the configured key
            temperature: Sampling temperature; kept low so JSON replies stay stable
            max_tokens: Maximum tokens in a reply
            language: Default system prompt language ("en" or "zh")

        Raises:
            ValidationError: for an unknown mode or missing cloud credentials
        """
        self.settings = settings
        self.mode = mode or settings.llm_mode
        self.language = language or settings.default_language

        model, url, key = self._resolve_endpoint(model_name, base_url, api_key)
        logger.info(f"Using {self.mode} LLM {model} at {url or 'api.openai.com'}")
        self.llm = ChatOpenAI(
            model=model,
            base_url=url,
            api_key=key,
            temperature=temperature,
            max_tokens=max_tokens,
            timeout=settings.analysis_timeout_seconds,
            max_retries=0,
        )

    def _resolve_endpoint(
        self,
        model_name: Optional[str],
        base_url: Optional[str],
        api_key: Optional[str]
    ) -> Tuple[str, Optional[str], str]:
        settings = self.settings
        if self.mode == "local":
            # Ollama ignores the key but the client requires one
            return (
                model_name or settings.local_model,
                base_url or settings.local_llm_url,
                api_key or "ollama",
            )
        if self.mode != "cloud":
            raise ValidationError(f"Unknown LLM mode: {self.mode}", field="llm_mode")

        model = model_name or settings.openai_model
        key = api_key or settings.openai_api_key
        if not key:
            raise ValidationError("OPENAI_API_KEY is not set", field="openai_api_key")
        if not model:
            raise ValidationError("OPENAI_MODEL is not set", field="openai_model")
        return model, base_url or settings.openai_base_url, key

    def _messages(self, message: str, system_message: Optional[str]) -> List[BaseMessage]:
        prompt = system_message if system_message is not None else get_system_prompt(self.language)
        return [SystemMessage(content=prompt), HumanMessage(content=message)]

    def invoke(self, message: str, system_message: Optional[str] = None) -> str:
        """
        Send one user message and return the reply text.

        Args:
            message: User message
            system_message: Replaces the assistant persona prompt when given
        """
        return self.llm.invoke(self._messages(message, system_message)).content

    async def ainvoke(self, message: str, system_message: Optional[str] = None) -> str:
        response = await self.llm.ainvoke(self._messages(message, system_message))
        return response.content

    @property
    def model_name(self) -> str:
        return self.llm.model_name
