"""Client for an OpenAI-compatible chat-completion endpoint (LM Studio style)."""
import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from bonsai.core.bonsai_types import LLMResult, TokenUsage
from bonsai.core.config import settings
from bonsai.core.errors import (
    TransientUpstreamError,
    UnrecoverableGenerationError,
    ValidationError,
)
from bonsai.core.metrics import MetricsCollector

logger = logging.getLogger(__name__)

BASE_URL_PATTERN = re.compile(r"^[\w.-]+(:\d+)?(/[\w./]*)?$")
CODE_SECTION = re.compile(r"<code>(.*?)</code>", re.IGNORECASE | re.DOTALL)
REASONING_SECTION = re.compile(r"<reasoning>(.*?)</reasoning>", re.IGNORECASE | re.DOTALL)
NO_REASONING = "(no reasoning provided)"

DOCUMENT_MAX_ATTEMPTS = 3
DOCUMENT_TEMPERATURE = 0.7

GENERATION_SYSTEM_PROMPT = """
You are a code-generation assistant. You MUST return output using ONLY the two XML tags below, with nothing before or after them. Absolutely NO markdown, NO backticks, NO prose outside the tags.

### REQUIRED SCHEMA (use exactly these tags and order):
<code>
[ONLY the final code here, no comments, no prose]
</code>
<reasoning>
[ONLY the explanation here, plain text, no code fences]
</reasoning>

### RULES (strict):
1) Output MUST start with "<code>" on the first line and end with "</reasoning>" on the last line.
2) No additional tags, headers, or text outside the two blocks.
3) Put ALL executable or final code inside <code>. Do NOT include explanations, comments, or markdown there.
4) Put ALL explanation inside <reasoning>. Do NOT include code fences or pseudo-tags there.
5) Do NOT wrap anything in triple backticks.
6) If unsure, still produce both tags (they may be empty), but NEVER add anything else.

### GOOD EXAMPLE
<code>
print("Hello world")
</code>
<reasoning>
This prints "Hello world" in Python.
</reasoning>

### BAD EXAMPLES (DO NOT DO):
- ```python ...```
- Any text before <code> or after </reasoning>
- Mixing code and explanation inside the same tag

Validate your output against the RULES before responding.
""".strip()

DOCUMENT_SYSTEM_PROMPT = """
You are an expert code generation assistant. You will be given an Agent.md file that describes a task or specification.
Your job is to analyze the Agent.md content and generate the appropriate source code that implements the described task.

You MUST return output using ONLY the two XML tags below, with nothing before or after them. Absolutely NO markdown, NO backticks, NO prose outside the tags.

### REQUIRED SCHEMA (use exactly these tags and order):
<code>
[ONLY the final generated source code here, no prose]
</code>
<reasoning>
[ONLY the explanation of what the code does and how it implements the Agent.md specification, plain text, no code fences]
</reasoning>

### RULES (strict):
1) Output MUST start with "<code>" on the first line and end with "</reasoning>" on the last line.
2) No additional tags, headers, or text outside the two blocks.
3) Put ALL generated source code inside <code>. Do NOT include explanations or markdown there.
4) Put ALL explanation inside <reasoning>. Do NOT include code fences there.
5) Do NOT wrap anything in triple backticks.
6) Generate complete, working code that implements the specification from the Agent.md file.

Validate your output against the RULES before responding.
""".strip()


@dataclass
class RetryPolicy:
    """
    Fixed-delay retry policy for LLM requests.

    ``max_attempts=None`` retries forever. That keeps a generation alive
    through flaky small-model formatting but can hang a batch if the endpoint
    never recovers.
    """
    delay: float = 1.0
    max_attempts: Optional[int] = None

    @property
    def is_unbounded(self) -> bool:
        return self.max_attempts is None

    def allows(self, attempt: int) -> bool:
        """Whether another attempt may follow attempt number ``attempt``."""
        return self.is_unbounded or attempt < self.max_attempts

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(
            delay=settings.llm_retry_delay,
            max_attempts=settings.llm_max_attempts if settings.has_retry_cap else None
        )


def validate_base_url(base_url: str) -> str:
    """
    Check a host[:port][/path] endpoint string.

    Raises:
        ValidationError: If the format is wrong
    """
    if not isinstance(base_url, str) or not BASE_URL_PATTERN.match(base_url):
        raise ValidationError(
            "Invalid URL format. Expected format: host:port/path (e.g., localhost:1234/v1)"
        )
    return base_url


def parse_sections(output: str) -> tuple:
    """
    Extract the code and reasoning sections of a model response.

    Returns:
        (content, reasoning, found) where found is False when neither tag is present
    """
    code_match = CODE_SECTION.search(output)
    reasoning_match = REASONING_SECTION.search(output)
    content = code_match.group(1).strip() if code_match else ""
    reasoning = reasoning_match.group(1).strip() if reasoning_match else NO_REASONING
    return content, reasoning, bool(code_match or reasoning_match)


def token_usage(usage: Any, output: str) -> TokenUsage:
    """Token counts from the response usage block, estimating what is missing."""
    usage = usage if isinstance(usage, dict) else {}
    prompt_tokens = usage.get("prompt_tokens")
    completion_tokens = usage.get("completion_tokens")
    total_tokens = usage.get("total_tokens")
    if not isinstance(prompt_tokens, int):
        prompt_tokens = 0
    if not isinstance(completion_tokens, int):
        completion_tokens = len(output.split())
    if not isinstance(total_tokens, int):
        total_tokens = prompt_tokens + completion_tokens
    return TokenUsage(prompt=prompt_tokens, completion=completion_tokens, total=total_tokens)


RetryCallback = Callable[[int, str], Awaitable[None]]


class LLMClient:
    """
    Chat-completion client returning parsed <code>/<reasoning> sections.

    Example:
        client = LLMClient(base_url="localhost:1234/v1", model="qwen/qwen2.5-coder-3b-instruct")
        result = await client.generate("Refactor this", "def f(): pass")
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        model: Optional[str] = None,
        api_key: Optional[str] = None,
        temperature: Optional[float] = None,
        timeout: Optional[float] = None,
        retry_policy: Optional[RetryPolicy] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        """
        Initialize the client.

        Args:
            base_url: host:port/path of the server (no scheme)
            model: Model identifier
            api_key: Bearer token
            temperature: Sampling temperature for generation
            timeout: Per-request timeout in seconds
            retry_policy: Retry policy; defaults to settings
            transport: Optional httpx transport (used by tests)
            sleep: Awaitable used between retries
        """
        self.base_url = base_url or settings.llm_base_url
        self.model = model or settings.llm_model
        self.api_key = api_key or settings.llm_api_key
        self.temperature = settings.llm_temperature if temperature is None else temperature
        self.timeout = settings.llm_timeout if timeout is None else timeout
        self.retry_policy = retry_policy or RetryPolicy.from_settings()
        self._transport = transport
        self._sleep = sleep

    def configure(self, base_url: Optional[str] = None, model: Optional[str] = None) -> None:
        """Switch endpoint or model; empty values keep the current ones."""
        self.base_url = base_url or self.base_url
        self.model = model or self.model

    def _client(self, timeout: Optional[float] = None, base_url: Optional[str] = None) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=f"http://{base_url or self.base_url}",
            headers={"Authorization": f"Bearer {self.api_key}"},
            timeout=self.timeout if timeout is None else timeout,
            transport=self._transport
        )

    async def _chat(self, system_prompt: str, user_content: str, temperature: float) -> Dict[str, Any]:
        """
        One chat-completion request.

        Returns:
            {"response": <trimmed text>, "usage": <usage block or None>}

        Raises:
            TransientUpstreamError: On transport errors, non-2xx or malformed JSON
        """
        body = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_content},
            ],
            "temperature": temperature,
            "stream": False,
        }
        try:
            async with self._client() as client:
                response = await client.post("/chat/completions", json=body)
        except httpx.HTTPError as e:
            raise TransientUpstreamError(f"Request failed: {e}") from e

        if response.is_error:
            detail = f" - {response.text}" if response.text else ""
            raise TransientUpstreamError(
                f"HTTP {response.status_code} {response.reason_phrase}{detail}"
            )

        try:
            data = response.json()
        except ValueError as e:
            raise TransientUpstreamError(f"Malformed response body: {e}") from e

        choice = {}
        if isinstance(data, dict) and isinstance(data.get("choices"), list) and data["choices"]:
            choice = data["choices"][0] if isinstance(data["choices"][0], dict) else {}
        message = choice.get("message") if isinstance(choice.get("message"), dict) else {}
        text = message.get("content")
        if not isinstance(text, str):
            text = choice.get("text") if isinstance(choice.get("text"), str) else ""

        usage = data.get("usage") if isinstance(data, dict) else None
        return {"response": text.strip(), "usage": usage}

    async def generate(
        self,
        prompt: str,
        code: str,
        on_retry: Optional[RetryCallback] = None
    ) -> LLMResult:
        """
        Generate a new code version from an instruction and base code.

        Transient failures and responses without either section are retried
        after the policy delay, indefinitely unless the policy caps attempts.

        Args:
            prompt: Instruction text
            code: Base code
            on_retry: Optional awaitable called with (attempt, reason) before each retry

        Returns:
            LLMResult with code, reasoning and token usage

        Raises:
            UnrecoverableGenerationError: If a capped policy runs out of attempts
        """
        user_content = f"User prompt:\n{prompt}\n{code}"
        attempt = 0
        while True:
            attempt += 1
            try:
                data = await self._chat(GENERATION_SYSTEM_PROMPT, user_content, self.temperature)
                output = data["response"]
                content, reasoning, found = parse_sections(output)
                if found:
                    MetricsCollector.record_llm_call(status="success")
                    return LLMResult(
                        content=content,
                        reasoning=reasoning,
                        tokens=token_usage(data["usage"], output)
                    )
                reason = "No <code>/<reasoning> tags found in LLM response"
            except TransientUpstreamError as e:
                reason = f"Error during LLM fetch/parsing: {e.message}"

            if not self.retry_policy.allows(attempt):
                MetricsCollector.record_llm_call(status="error")
                raise UnrecoverableGenerationError(
                    f"LLM request failed after {attempt} attempts: {reason}"
                )

            MetricsCollector.record_llm_call(status="retry")
            logger.warning(f"{reason}. Retrying in {self.retry_policy.delay}s (attempt {attempt})")
            if on_retry is not None:
                await on_retry(attempt, reason)
            await self._sleep(self.retry_policy.delay)

    async def synthesize_from_document(self, document: str) -> LLMResult:
        """
        Generate source code from a specification document (Agent.md).

        Raises:
            UnrecoverableGenerationError: If no code section is produced within the attempts
        """
        user_content = f"Generate source code based on this Agent.md specification:\n\n{document}"
        last_error: Optional[str] = None
        for attempt in range(1, DOCUMENT_MAX_ATTEMPTS + 1):
            try:
                data = await self._chat(DOCUMENT_SYSTEM_PROMPT, user_content, DOCUMENT_TEMPERATURE)
                output = data["response"]
                content, reasoning, _ = parse_sections(output)
                if content:
                    MetricsCollector.record_llm_call(status="success")
                    return LLMResult(
                        content=content,
                        reasoning=reasoning,
                        tokens=token_usage(data["usage"], output)
                    )
                last_error = "No <code> block found in LLM response"
                logger.warning(f"{last_error}. Retrying...")
            except TransientUpstreamError as e:
                last_error = e.message
                logger.warning(f"Error during Agent.md processing: {e.message}")
                if attempt == DOCUMENT_MAX_ATTEMPTS:
                    MetricsCollector.record_llm_call(status="error")
                    raise UnrecoverableGenerationError(e.message) from e
            MetricsCollector.record_llm_call(status="retry")
            await self._sleep(self.retry_policy.delay)

        MetricsCollector.record_llm_call(status="error")
        raise UnrecoverableGenerationError(
            f"Failed to generate code from Agent.md after multiple attempts: {last_error}"
        )

    async def list_models(
        self,
        timeout: Optional[float] = None,
        base_url: Optional[str] = None
    ) -> List[str]:
        """
        List model ids advertised by the server.

        Args:
            timeout: Request timeout; defaults to the connection test timeout
            base_url: Endpoint to probe instead of the configured one

        Raises:
            ValidationError: If the base URL is malformed
            TransientUpstreamError: If the server is unreachable or answers non-2xx
        """
        target = validate_base_url(base_url or self.base_url)
        timeout = settings.connection_test_timeout if timeout is None else timeout
        try:
            async with self._client(timeout=timeout, base_url=target) as client:
                response = await client.get("/models")
        except httpx.HTTPError as e:
            raise TransientUpstreamError(f"Server not reachable: {e}") from e

        if response.is_error:
            detail = f" - {response.text}" if response.text else ""
            raise TransientUpstreamError(
                f"Server not reachable: HTTP {response.status_code} {response.reason_phrase}{detail}"
            )

        try:
            data = response.json()
        except ValueError as e:
            raise TransientUpstreamError(f"Malformed model list: {e}") from e

        entries = data.get("data") if isinstance(data, dict) else None
        if not isinstance(entries, list):
            return []
        return [entry["id"] for entry in entries if isinstance(entry, dict) and "id" in entry]
