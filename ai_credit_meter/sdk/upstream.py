"""
Upstream AI gateway.

Thin client for an OpenAI-compatible chat completions service, in blocking
and streaming form. Every transport, timeout or status failure surfaces as
UpstreamError; the gateway never retries.
"""

import logging
from dataclasses import dataclass
from typing import Any, Iterator, Optional

import openai
from openai import OpenAI

from ..core.errors import UpstreamError
from ..core.token_counter import TokenUsage

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0


@dataclass(frozen=True)
class UpstreamReply:
    """Complete answer from a blocking call."""
    text: str
    usage: Optional[TokenUsage]
    conversation_id: Optional[str]
    message_id: Optional[str]


@dataclass(frozen=True)
class UpstreamChunk:
    """One increment of a streamed answer.

    The final chunk of a stream carries the usage metadata.
    """
    text: str = ""
    usage: Optional[TokenUsage] = None
    conversation_id: Optional[str] = None
    message_id: Optional[str] = None


def _usage_from(usage: Any) -> Optional[TokenUsage]:
    if usage is None:
        return None
    return TokenUsage(
        prompt_tokens=usage.prompt_tokens or 0,
        completion_tokens=usage.completion_tokens or 0,
        reported_total=usage.total_tokens
    )


def _upstream_error(error: openai.OpenAIError) -> UpstreamError:
    if isinstance(error, openai.APITimeoutError):
        return UpstreamError("Upstream request timed out")
    if isinstance(error, openai.APIStatusError):
        return UpstreamError(
            f"Upstream API error: {error.status_code} - {error.message}",
            status_code=error.status_code
        )
    if isinstance(error, openai.APIConnectionError):
        return UpstreamError(f"Upstream connection failed: {error}")
    return UpstreamError(f"Upstream error: {error}")


class UpstreamGateway:
    """Client for the upstream completion service.

    The conversation id is opaque to the gateway: it is passed through
    when the caller has one, otherwise the upstream message id of the
    first response is used to start a new conversation.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        client: Optional[OpenAI] = None
    ):
        """Initialize the gateway.

        Args:
            base_url: Service endpoint (defaults to the OpenAI API)
            api_key: API key (defaults to the OPENAI_API_KEY environment variable)
            timeout: Default per-request timeout in seconds
            client: Preconfigured client, mainly for tests
        """
        if timeout <= 0:
            raise ValueError("timeout must be > 0")
        self.base_url = base_url
        self.api_key = api_key
        self.timeout = timeout
        self._client = client

    @property
    def client(self) -> OpenAI:
        # Built on first use so callers that never reach upstream need no key
        if self._client is None:
            self._client = OpenAI(
                base_url=self.base_url,
                api_key=self.api_key,
                timeout=self.timeout,
                max_retries=0
            )
        return self._client

    def complete(
        self,
        query: str,
        user_id: str,
        model: str,
        conversation_id: Optional[str] = None,
        timeout: Optional[float] = None
    ) -> UpstreamReply:
        """Send a blocking completion request.

        Args:
            query: User message
            user_id: End-user identifier forwarded to the provider
            model: Model identifier
            conversation_id: Optional existing conversation
            timeout: Per-request timeout override in seconds

        Returns:
            UpstreamReply with answer text and usage (None if not reported)

        Raises:
            UpstreamError: On any transport, timeout or status failure
        """
        try:
            response = self.client.chat.completions.create(
                model=model,
                messages=[{"role": "user", "content": query}],
                user=user_id,
                timeout=timeout or self.timeout
            )
        except openai.OpenAIError as e:
            raise _upstream_error(e) from e

        if not response.choices:
            raise UpstreamError("Upstream response contained no choices")

        return UpstreamReply(
            text=response.choices[0].message.content or "",
            usage=_usage_from(response.usage),
            conversation_id=conversation_id or response.id,
            message_id=response.id
        )

    def complete_streaming(
        self,
        query: str,
        user_id: str,
        model: str,
        conversation_id: Optional[str] = None,
        timeout: Optional[float] = None
    ) -> Iterator[UpstreamChunk]:
        """Stream a completion as a finite sequence of chunks.

        The iterator ending normally is the end-of-stream marker; failures
        raise UpstreamError instead. Malformed chunks are skipped and logged.

        Raises:
            UpstreamError: On any transport, timeout or status failure
        """
        try:
            stream = self.client.chat.completions.create(
                model=model,
                messages=[{"role": "user", "content": query}],
                user=user_id,
                stream=True,
                stream_options={"include_usage": True},
                timeout=timeout or self.timeout
            )
        except openai.OpenAIError as e:
            raise _upstream_error(e) from e

        try:
            for raw in stream:
                chunk = self._translate(raw, conversation_id)
                if chunk is None:
                    continue
                conversation_id = chunk.conversation_id
                yield chunk
        except openai.OpenAIError as e:
            raise _upstream_error(e) from e
        finally:
            stream.close()

    @staticmethod
    def _translate(raw: Any, conversation_id: Optional[str]) -> Optional[UpstreamChunk]:
        message_id = getattr(raw, "id", None)
        usage = _usage_from(getattr(raw, "usage", None))
        choices = getattr(raw, "choices", None) or []

        if not choices and usage is None:
            logger.warning("Skipping malformed upstream chunk %s: no choices and no usage", message_id)
            return None

        text = ""
        if choices:
            delta = getattr(choices[0], "delta", None)
            content = getattr(delta, "content", None)
            if content is not None and not isinstance(content, str):
                logger.warning("Skipping malformed upstream chunk %s: non-text content", message_id)
                return None
            text = content or ""

        return UpstreamChunk(
            text=text,
            usage=usage,
            conversation_id=conversation_id or message_id,
            message_id=message_id
        )
