"""Model client interface and OpenRouter implementation."""

import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

from agentic_autocoder.constants import DEFAULT_REASONING_EFFORT, DEFAULT_REQUEST_TIMEOUT_S

logger = logging.getLogger(__name__)


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass
class Message:
    """A chat message."""
    role: str  # "system", "user", "assistant"
    content: str


@dataclass
class CompletionResult:
    """Result from a model completion call."""
    content: str
    model: str
    usage: Optional[Dict[str, Any]] = None
    raw_response: Optional[Dict[str, Any]] = None


@dataclass
class ModelConfig:
    """Per-call model settings (which model, how long to wait, trace label)."""
    model: str
    timeout: float = DEFAULT_REQUEST_TIMEOUT_S
    max_tokens: Optional[int] = None
    include_reasoning: bool = True
    reasoning_effort: str = DEFAULT_REASONING_EFFORT
    phase: str = "unknown"  # "plan", "step", "diagnose"


class ModelClient(ABC):
    """Abstract interface for model clients."""

    @abstractmethod
    def complete(
        self,
        messages: List[Message],
        model: str,
        timeout: float = 30.0,
        max_tokens: Optional[int] = None,
        include_reasoning: bool = False,
        reasoning_effort: str = "low",
    ) -> CompletionResult:
        """
        Execute a chat completion.

        Args:
            messages: List of chat messages
            model: Model identifier
            timeout: Request timeout in seconds
            max_tokens: Maximum output tokens (if None, use model default)
            include_reasoning: Whether to request reasoning (hidden, not returned)
            reasoning_effort: Reasoning effort level ("low", "medium", "high")

        Returns:
            CompletionResult with content and metadata

        Raises:
            ModelClientError: On API or network errors
        """
        pass

    def close(self) -> None:
        """Release any held resources. Default: nothing to release."""
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False


class ModelClientError(Exception):
    """Error from model client operations."""
    pass


class OpenRouterClient(ModelClient):
    """OpenRouter API client.

    Uses the OpenRouter chat completions endpoint. Holds one pooled
    httpx.Client for the lifetime of the session; call close() (or use
    the client as a context manager) when the session ends.
    """

    BASE_URL = "https://openrouter.ai/api/v1/chat/completions"

    def __init__(self, api_key: Optional[str] = None):
        """
        Initialize OpenRouter client.

        Args:
            api_key: OpenRouter API key. If not provided, reads from
                     OPENROUTER_API_KEY environment variable.
        """
        self.api_key = api_key or os.environ.get("OPENROUTER_API_KEY")
        if not self.api_key:
            raise ModelClientError(
                "OPENROUTER_API_KEY environment variable is required."
            )
        self._http: Optional[httpx.Client] = httpx.Client()

    @property
    def closed(self) -> bool:
        return self._http is None

    def close(self) -> None:
        if self._http is not None:
            self._http.close()
            self._http = None

    def _make_request(
        self,
        payload: dict,
        headers: dict,
        timeout: float,
    ) -> dict:
        """Make HTTP request to OpenRouter API."""
        if self._http is None:
            raise ModelClientError("Model client is closed")
        response = self._http.post(
            self.BASE_URL,
            headers=headers,
            json=payload,
            timeout=timeout,
        )
        response.raise_for_status()
        return response.json()

    def complete(
        self,
        messages: List[Message],
        model: str,
        timeout: float = 30.0,
        max_tokens: Optional[int] = None,
        include_reasoning: bool = False,
        reasoning_effort: str = "low",
    ) -> CompletionResult:
        """
        Execute a chat completion via OpenRouter.

        If the model rejects the reasoning parameters (HTTP 400 mentioning
        reasoning), the call is retried once without them.
        """
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "HTTP-Referer": "https://github.com/agentic-autocoder",
            "X-Title": "Autocoder CLI",
        }

        payload = {
            "model": model,
            "messages": [{"role": m.role, "content": m.content} for m in messages],
        }

        if max_tokens is not None:
            payload["max_tokens"] = max_tokens

        # Reasoning is requested hidden; it is never returned or stored
        if include_reasoning:
            payload["include_reasoning"] = True
            payload["reasoning"] = {"effort": reasoning_effort, "exclude": True}

        logger.debug("model=%s max_tokens=%s reasoning=%s", model, max_tokens, include_reasoning)

        try:
            data = self._make_request(payload, headers, timeout)

        except httpx.HTTPStatusError as e:
            error_text = e.response.text.lower()
            if include_reasoning and e.response.status_code == 400 and (
                "reasoning" in error_text or "unknown" in error_text
            ):
                logger.debug("Reasoning unsupported for %s, retrying without", model)
                payload.pop("include_reasoning", None)
                payload.pop("reasoning", None)
                try:
                    data = self._make_request(payload, headers, timeout)
                except httpx.HTTPStatusError as e2:
                    raise ModelClientError(f"API error: {_error_message(e2)}")
                except httpx.TimeoutException:
                    raise ModelClientError(f"Request timed out after {timeout}s.")
                except httpx.RequestError as e2:
                    raise ModelClientError(f"Network error: {e2}")
            else:
                raise ModelClientError(f"API error: {_error_message(e)}")

        except httpx.TimeoutException:
            raise ModelClientError(
                f"Request timed out after {timeout}s. "
                "Try again or use a faster model."
            )
        except httpx.RequestError as e:
            raise ModelClientError(f"Network error: {e}")

        choices = data.get("choices", [])
        if not choices:
            raise ModelClientError("No choices in API response")

        message = choices[0].get("message") or {}
        content = message.get("content") or ""
        if not content:
            raise ModelClientError("Empty content in API response")

        return CompletionResult(
            content=content,
            model=data.get("model", model),
            usage=data.get("usage"),
            raw_response=data,
        )


def _error_message(error: httpx.HTTPStatusError) -> str:
    """Extract the provider's error message from a failed response, if any."""
    try:
        error_data = error.response.json()
        return error_data.get("error", {}).get("message", str(error))
    except Exception:
        return str(error)


def get_openrouter_client(api_key: Optional[str] = None) -> OpenRouterClient:
    """Get an OpenRouter client instance."""
    return OpenRouterClient(api_key=api_key)


def traced_complete(
    client: ModelClient,
    messages: List[Message],
    model_config: ModelConfig,
    run_id: str = "",
) -> CompletionResult:
    """
    Wrapper that adds LangSmith tracing around a model call.

    Creates a traced span named "{phase}_{model}" with the messages as
    input and content/model/usage as output. Tracing is a no-op unless
    LangSmith tracing is enabled in the environment.
    """
    from langsmith import traceable

    model = model_config.model
    trace_name = f"{model_config.phase}_{model.replace('/', '_')}"
    messages_dict = [{"role": m.role, "content": m.content} for m in messages]

    @traceable(
        name=trace_name,
        run_type="llm",
        metadata={
            "phase": model_config.phase,
            "model": model,
            "run_id": run_id,
            "max_tokens": model_config.max_tokens,
        },
    )
    def _traced_call(messages_input: List[dict], model_name: str) -> dict:
        msg_objects = [Message(role=m["role"], content=m["content"]) for m in messages_input]

        result = client.complete(
            messages=msg_objects,
            model=model_name,
            timeout=model_config.timeout,
            max_tokens=model_config.max_tokens,
            include_reasoning=model_config.include_reasoning,
            reasoning_effort=model_config.reasoning_effort,
        )

        return {
            "content": result.content,
            "model": result.model,
            "usage": result.usage,
        }

    output = _traced_call(messages_dict, model)

    return CompletionResult(
        content=output["content"],
        model=output["model"],
        usage=output.get("usage"),
    )


def complete_text(
    client: ModelClient,
    system_prompt: str,
    user_prompt: str,
    model_config: ModelConfig,
) -> str:
    """Single system+user exchange; returns the reply text."""
    messages = [
        Message(role="system", content=system_prompt),
        Message(role="user", content=user_prompt),
    ]
    return traced_complete(client, messages, model_config).content
