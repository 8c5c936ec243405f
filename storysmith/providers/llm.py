"""OpenAI-compatible chat-completions client (OpenAI, vLLM, LM Studio, Ollama /v1, ...)."""

from typing import Any

import httpx
import structlog

from storysmith.config.settings import AgentAssignment
from storysmith.exceptions import ExternalServiceError
from storysmith.providers.base import LLMClient

log = structlog.get_logger(__name__)


class OpenAICompatibleClient(LLMClient):
    """LLM client for servers implementing ``POST /chat/completions``.

    Retries are left to the caller; transport errors propagate as
    ``httpx.TransportError`` and HTTP errors become ``ExternalServiceError``.
    """

    def __init__(
        self,
        base_url: str = "http://localhost:8000/v1",
        model: str = "default",
        api_key: str | None = None,
        temperature: float = 0.2,
        max_tokens: int = 4096,
        timeout: float = 300.0,
        client: httpx.AsyncClient | None = None,
    ):
        """Initialize the client.

        Args:
            base_url: API base URL (e.g., http://localhost:8000/v1)
            model: Model identifier to use
            api_key: Optional API key for authentication
            temperature: Default sampling temperature
            max_tokens: Default completion budget
            timeout: Request timeout in seconds
            client: Pre-built httpx client (tests inject a MockTransport)
        """
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens

        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"

        self.client = client or httpx.AsyncClient(timeout=timeout, headers=headers)

    @classmethod
    def from_assignment(cls, assignment: AgentAssignment) -> "OpenAICompatibleClient":
        api_key = assignment.api_key.get_secret_value() if assignment.api_key else None
        return cls(
            base_url=assignment.base_url,
            model=assignment.model,
            api_key=api_key,
            temperature=assignment.temperature,
            max_tokens=assignment.max_tokens,
            timeout=assignment.timeout,
        )

    async def complete(
        self,
        prompt: str,
        system_prompt: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> str:
        messages: list[dict[str, str]] = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})

        payload: dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "temperature": self.temperature if temperature is None else temperature,
            "max_tokens": self.max_tokens if max_tokens is None else max_tokens,
        }

        log.debug("llm_request", model=self.model, prompt_length=len(prompt))
        response = await self.client.post(f"{self.base_url}/chat/completions", json=payload)

        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            error_detail = e.response.text
            try:
                error_detail = e.response.json().get("error", {}).get("message", error_detail)
            except ValueError:
                pass
            log.error("llm_request_failed", model=self.model, status_code=e.response.status_code)
            raise ExternalServiceError(
                f"Model endpoint error: {error_detail}",
                status_code=e.response.status_code,
                response_text=e.response.text,
            ) from e

        result = response.json()
        choices = result.get("choices", [])
        if not choices:
            raise ExternalServiceError("No choices returned from model endpoint")

        output = choices[0].get("message", {}).get("content", "") or ""
        usage = result.get("usage", {})
        log.info(
            "llm_completed",
            model=self.model,
            output_length=len(output),
            tokens=usage.get("total_tokens", usage.get("completion_tokens", 0)),
        )
        return str(output)

    async def close(self) -> None:
        await self.client.aclose()
