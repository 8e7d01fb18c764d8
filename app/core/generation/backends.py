# app/core/generation/backends.py
"""
BACKENDS MODULE - One interface over every model provider

Purpose:
    1. ModelBackend: generate(prompt, system) → text, health_check(), aclose()
    2. Concrete providers: Ollama, OpenAI-compatible (OpenAI, vLLM, Groq,
       llama.cpp server), Anthropic, and a scripted mock
    3. Timeout + bounded exponential-backoff retries for transient failures only
    4. create_backend() picks the provider from settings; callers never do

Error classes:
    transient → timeout, connection refused, HTTP 429   (retried)
    permanent → auth (401/403), bad request, anything else (raised at once)
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence, Union, runtime_checkable

import httpx

from app.core.errors import (
    BackendError,
    BackendUnavailableError,
    PermanentBackendError,
    TransientBackendError,
)

logger = logging.getLogger(__name__)


@runtime_checkable
class ModelBackend(Protocol):
    """What the pipeline needs from a provider. Nothing else is assumed."""

    name: str
    model: str

    async def generate(self, prompt: str, system: Optional[str] = None) -> str: ...

    async def health_check(self) -> None: ...

    async def aclose(self) -> None: ...


# ============================================================================
# STEP 1: SHARED HTTP TRANSPORT
# ============================================================================


class HttpTransport:
    """
    One connection pool and one concurrency limit per provider instance.
    Requests from different pipeline runs share both; retry state is per call.
    """

    def __init__(
        self,
        provider: str,
        base_url: str,
        headers: Optional[Dict[str, str]] = None,
        timeout: float = 120.0,
        max_concurrency: int = 4,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.provider = provider
        # Sent per request so an injected client gets them too
        self.headers = headers or {}
        self.client = client or httpx.AsyncClient(base_url=base_url.rstrip("/"), timeout=timeout)
        self._owns_client = client is None
        self._limit = asyncio.Semaphore(max(1, max_concurrency))

    async def request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        kwargs.setdefault("headers", self.headers)
        async with self._limit:
            try:
                response = await self.client.request(method, path, **kwargs)
            except httpx.TimeoutException as e:
                raise TransientBackendError(f"{self.provider} request timed out", reason="timeout") from e
            except httpx.ConnectError as e:
                raise TransientBackendError(
                    f"{self.provider} refused the connection", reason="connection_refused"
                ) from e
            except httpx.HTTPError as e:
                raise PermanentBackendError(f"{self.provider} transport error: {e}", reason="transport") from e

        check_status(self.provider, response)
        return response

    async def json(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        response = await self.request(method, path, **kwargs)
        try:
            data = response.json()
        except ValueError as e:
            raise PermanentBackendError(
                f"{self.provider} returned a non-JSON body", reason="malformed_response"
            ) from e
        if not isinstance(data, dict):
            raise PermanentBackendError(
                f"{self.provider} returned unexpected JSON: {type(data).__name__}",
                reason="malformed_response",
            )
        return data

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()


def check_status(provider: str, response: httpx.Response) -> None:
    """Map HTTP status codes onto transient / permanent backend errors."""
    code = response.status_code
    if code < 400:
        return
    if code == 429:
        raise TransientBackendError(f"{provider} rate limited the request", reason="rate_limited", status_code=code)
    if code in (401, 403):
        raise PermanentBackendError(f"{provider} rejected the credentials", reason="auth", status_code=code)
    if code < 500:
        raise PermanentBackendError(f"{provider} rejected the request ({code})", reason="bad_request", status_code=code)
    raise PermanentBackendError(f"{provider} server error ({code})", reason="server_error", status_code=code)


# ============================================================================
# STEP 2: PROVIDERS
# ============================================================================


class OllamaBackend:
    """Local Ollama server: POST /api/generate, health GET /api/tags."""

    name = "ollama"

    def __init__(
        self,
        endpoint: str = "http://localhost:11434",
        model: str = "qwen2.5-coder:7b",
        timeout: float = 120.0,
        temperature: float = 0.2,
        max_tokens: int = 4096,
        max_concurrency: int = 4,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.http = HttpTransport(self.name, endpoint, timeout=timeout, max_concurrency=max_concurrency, client=client)

    async def generate(self, prompt: str, system: Optional[str] = None) -> str:
        payload: Dict[str, Any] = {
            "model": self.model,
            "prompt": prompt,
            "stream": False,
            "options": {"temperature": self.temperature, "num_predict": self.max_tokens},
        }
        if system:
            payload["system"] = system
        data = await self.http.json("POST", "/api/generate", json=payload)
        text = data.get("response")
        if not isinstance(text, str):
            raise PermanentBackendError("ollama response has no 'response' text", reason="malformed_response")
        return text

    async def health_check(self) -> None:
        await self.http.request("GET", "/api/tags")

    async def aclose(self) -> None:
        await self.http.aclose()


class OpenAICompatibleBackend:
    """
    Any server speaking the OpenAI chat completions API.

    Example:
        OpenAICompatibleBackend("vllm", "http://gpu-box:8000/v1", "Qwen/Qwen2.5-Coder-7B-Instruct")
    """

    def __init__(
        self,
        name: str,
        endpoint: str,
        model: str,
        api_key: Optional[str] = None,
        timeout: float = 120.0,
        temperature: float = 0.2,
        max_tokens: int = 4096,
        max_concurrency: int = 4,
        health_path: str = "/models",
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.name = name
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.health_path = health_path
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self.http = HttpTransport(
            name, endpoint, headers=headers, timeout=timeout, max_concurrency=max_concurrency, client=client
        )

    async def generate(self, prompt: str, system: Optional[str] = None) -> str:
        messages = [{"role": "system", "content": system}] if system else []
        messages.append({"role": "user", "content": prompt})
        data = await self.http.json(
            "POST",
            "/chat/completions",
            json={
                "model": self.model,
                "messages": messages,
                "temperature": self.temperature,
                "max_tokens": self.max_tokens,
            },
        )
        try:
            text = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise PermanentBackendError(f"{self.name} response has no message content", reason="malformed_response") from e
        if not isinstance(text, str):
            raise PermanentBackendError(f"{self.name} message content is not text", reason="malformed_response")
        return text

    async def health_check(self) -> None:
        await self.http.request("GET", self.health_path)

    async def aclose(self) -> None:
        await self.http.aclose()


class AnthropicBackend:
    """Anthropic Messages API. Health is a local key check (no billable call)."""

    name = "anthropic"
    API_VERSION = "2023-06-01"

    def __init__(
        self,
        api_key: str,
        model: str = "claude-3-5-sonnet-latest",
        endpoint: str = "https://api.anthropic.com/v1",
        timeout: float = 120.0,
        temperature: float = 0.2,
        max_tokens: int = 4096,
        max_concurrency: int = 4,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_key = api_key
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        headers = {
            "x-api-key": api_key,
            "anthropic-version": self.API_VERSION,
            "content-type": "application/json",
        }
        self.http = HttpTransport(
            self.name, endpoint, headers=headers, timeout=timeout, max_concurrency=max_concurrency, client=client
        )

    async def generate(self, prompt: str, system: Optional[str] = None) -> str:
        payload: Dict[str, Any] = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
            "messages": [{"role": "user", "content": prompt}],
        }
        if system:
            payload["system"] = system
        data = await self.http.json("POST", "/messages", json=payload)
        blocks = data.get("content") or []
        text = "".join(
            block.get("text", "") for block in blocks if isinstance(block, dict) and block.get("type") == "text"
        )
        if not text:
            raise PermanentBackendError("anthropic response has no text content", reason="malformed_response")
        return text

    async def health_check(self) -> None:
        if not self.api_key or not self.api_key.startswith("sk-ant-"):
            raise PermanentBackendError("anthropic API key is missing or malformed", reason="auth")

    async def aclose(self) -> None:
        await self.http.aclose()


@dataclass(frozen=True)
class MockDelay:
    """Scripted mock step: wait, then answer with `then` (text or exception)."""

    seconds: float
    then: Union[str, BaseException] = ""


MockStep = Union[str, BaseException, MockDelay]


class MockBackend:
    """
    Scripted provider for tests and offline development.

    Example:
        backend = MockBackend([TransientBackendError("busy"), "--- XML ---\\n<x/>"])
    """

    name = "mock"

    def __init__(
        self,
        responses: Sequence[MockStep] = (),
        default: Optional[str] = None,
        healthy: bool = True,
        model: str = "mock",
    ):
        self.model = model
        self.responses: List[MockStep] = list(responses)
        self.default = default
        self.healthy = healthy
        self.calls = 0
        self.prompts: List[str] = []
        self.closed = False

    async def generate(self, prompt: str, system: Optional[str] = None) -> str:
        self.calls += 1
        # Recorded as the provider would read it: system text first
        self.prompts.append(f"{system}\n\n{prompt}" if system else prompt)

        step: Optional[MockStep] = self.responses.pop(0) if self.responses else self.default
        if step is None:
            raise PermanentBackendError("mock backend has no scripted response", reason="exhausted")
        if isinstance(step, MockDelay):
            await asyncio.sleep(step.seconds)
            step = step.then
        if isinstance(step, BaseException):
            raise step
        return step

    async def health_check(self) -> None:
        if not self.healthy:
            raise TransientBackendError("mock backend is marked unhealthy", reason="connection_refused")

    async def aclose(self) -> None:
        self.closed = True


# ============================================================================
# STEP 3: TIMEOUT + RETRY
# ============================================================================


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    multiplier: float = 2.0
    timeout: float = 120.0

    def delay_for(self, attempt: int) -> float:
        """Backoff after the given (1-based) failed attempt: base, base*2, base*4 ... capped."""
        return min(self.base_delay * (self.multiplier ** (attempt - 1)), self.max_delay)

    @classmethod
    def from_settings(cls, settings) -> "RetryPolicy":
        return cls(
            max_attempts=max(1, settings.LLM_MAX_ATTEMPTS),
            base_delay=settings.LLM_BACKOFF_BASE_SECONDS,
            max_delay=settings.LLM_BACKOFF_MAX_SECONDS,
            timeout=settings.LLM_TIMEOUT_SECONDS,
        )


RetryCallback = Callable[[int, BackendError, float], None]


async def call_with_retries(
    backend: ModelBackend,
    prompt: str,
    policy: RetryPolicy,
    on_retry: Optional[RetryCallback] = None,
    sleep: Callable[[float], Any] = asyncio.sleep,
    system: Optional[str] = None,
) -> str:
    """
    Call backend.generate() under a timeout, retrying transient failures.

    A cancelled provider call counts as a timeout. Cancellation of the task
    running this function is re-raised untouched.

    Args:
        backend: Provider to call
        prompt: User prompt text
        system: System text, sent in the provider's system slot
        policy: Attempt ceiling, backoff and per-attempt timeout
        on_retry: Called as on_retry(attempt, error, delay) before each retry
        sleep: Awaitable sleep (tests pass a no-op)

    Returns:
        Generated text from the first successful attempt

    Raises:
        BackendError: permanent error immediately, or the last transient error
                      once max_attempts is used up
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return await asyncio.wait_for(backend.generate(prompt, system=system), timeout=policy.timeout)
        except asyncio.TimeoutError:
            error: BackendError = TransientBackendError(
                f"{backend.name} call exceeded {policy.timeout}s", reason="timeout"
            )
        except asyncio.CancelledError:
            task = asyncio.current_task()
            if task is not None and task.cancelling():
                raise
            error = TransientBackendError(f"{backend.name} call was cancelled", reason="timeout")
        except BackendError as e:
            if not e.transient:
                logger.error(f"{backend.name} permanent failure ({e.reason}), not retrying")
                raise
            error = e

        if attempt >= policy.max_attempts:
            logger.error(f"{backend.name} failed after {attempt} attempts: {error.reason}")
            raise error

        delay = policy.delay_for(attempt)
        logger.warning(
            f"{backend.name} attempt {attempt}/{policy.max_attempts} failed ({error.reason}), "
            f"retrying in {delay:.1f}s"
        )
        if on_retry is not None:
            on_retry(attempt, error, delay)
        await sleep(delay)


async def ensure_healthy(backend: ModelBackend, timeout: float) -> None:
    """
    Fail fast before spending the retry budget.

    Raises:
        BackendUnavailableError: health check failed or took longer than timeout
    """
    try:
        await asyncio.wait_for(backend.health_check(), timeout=timeout)
    except asyncio.TimeoutError as e:
        raise BackendUnavailableError(f"{backend.name} health check timed out") from e
    except BackendError as e:
        raise BackendUnavailableError(f"{backend.name} is unavailable: {e}") from e


# ============================================================================
# STEP 4: PROVIDER SELECTION
# ============================================================================

OPENAI_COMPATIBLE_DEFAULTS: Dict[str, Dict[str, str]] = {
    "openai": {"endpoint": "https://api.openai.com/v1", "model": "gpt-4o-mini", "health_path": "/models"},
    "groq": {"endpoint": "https://api.groq.com/openai/v1", "model": "llama-3.3-70b-versatile", "health_path": "/models"},
    "vllm": {"endpoint": "http://localhost:8000/v1", "model": "Qwen/Qwen2.5-Coder-7B-Instruct", "health_path": "/models"},
    "llama-cpp": {"endpoint": "http://localhost:8080/v1", "model": "local", "health_path": "/models"},
}

# Hosted providers refuse to start without a key
KEY_REQUIRED = {"openai", "groq", "anthropic"}

MOCK_RESPONSE = """--- XML ---
<screen id="mock_screen">
  <xlinkdataset id="ds_mock" />
</screen>
--- JS ---
// TODO: replace mock output with a configured LLM provider
"""


def create_backend(settings, client: Optional[httpx.AsyncClient] = None) -> ModelBackend:
    """
    Build the configured provider.

    Unknown LLM_PROVIDER values log a warning and fall back to Ollama.

    Raises:
        ValueError: a hosted provider is selected without LLM_API_KEY
    """
    provider = (settings.LLM_PROVIDER or "ollama").strip().lower()
    common = {
        "timeout": settings.LLM_TIMEOUT_SECONDS,
        "temperature": settings.LLM_TEMPERATURE,
        "max_tokens": settings.LLM_MAX_TOKENS,
        "max_concurrency": settings.LLM_MAX_CONCURRENCY,
        "client": client,
    }

    if provider in KEY_REQUIRED and not settings.LLM_API_KEY:
        raise ValueError(f"LLM_API_KEY is required for provider '{provider}'")

    if provider == "mock":
        return MockBackend(default=MOCK_RESPONSE, model=settings.LLM_MODEL or "mock")

    if provider == "anthropic":
        return AnthropicBackend(
            api_key=settings.LLM_API_KEY,
            model=settings.LLM_MODEL or "claude-3-5-sonnet-latest",
            endpoint=settings.LLM_ENDPOINT or "https://api.anthropic.com/v1",
            **common,
        )

    if provider in OPENAI_COMPATIBLE_DEFAULTS:
        defaults = OPENAI_COMPATIBLE_DEFAULTS[provider]
        return OpenAICompatibleBackend(
            name=provider,
            endpoint=settings.LLM_ENDPOINT or defaults["endpoint"],
            model=settings.LLM_MODEL or defaults["model"],
            api_key=settings.LLM_API_KEY,
            health_path=defaults["health_path"],
            **common,
        )

    if provider != "ollama":
        logger.warning(f"Unknown LLM_PROVIDER '{provider}', falling back to ollama")

    return OllamaBackend(
        endpoint=settings.LLM_ENDPOINT or "http://localhost:11434",
        model=settings.LLM_MODEL or "qwen2.5-coder:7b",
        **common,
    )
