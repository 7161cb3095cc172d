"""Chat-completion client for OpenAI-compatible endpoints, via LiteLLM."""

import functools
import logging
import os

from .errors import ConfigError, NetworkFailure

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.openai.com/v1"
DEFAULT_MODEL = "gpt-4o-mini"
DEFAULT_API_KEY_ENV = "OPENAI_API_KEY"
DEFAULT_TEMPERATURE = 0.2
DEFAULT_LLM_TIMEOUT = 120


def normalize_base_url(base_url: str) -> str:
    """Strip a trailing ``/chat/completions`` (and slashes) from ``base_url``."""
    url = (base_url or DEFAULT_BASE_URL).strip().rstrip("/")
    if url.endswith("/chat/completions"):
        url = url[: -len("/chat/completions")].rstrip("/")
    return url


def resolve_api_key(config: dict) -> str:
    """The key from the ``api_key_env`` variable, else ``api_key``."""
    env_name = config.get("api_key_env") or DEFAULT_API_KEY_ENV
    key = os.environ.get(env_name, "").strip()
    if key:
        return key
    key = (config.get("api_key") or "").strip()
    if key:
        return key
    raise ConfigError(
        f"no API key: set ${env_name} or api_key in config.toml "
        "(dongshan config init prints a template)"
    )


@functools.lru_cache(maxsize=1)
def _encoder():
    import tiktoken

    return tiktoken.get_encoding("cl100k_base")


def estimate_tokens(messages: list) -> int:
    """Approximate prompt size of ``messages`` using tiktoken."""
    enc = _encoder()
    total = 0
    for m in messages:
        content = m.get("content", "") if isinstance(m, dict) else m.content
        total += len(enc.encode(content or ""))
    # Per-message overhead (role, separators), ~4 tokens each
    total += 4 * len(messages)
    return total


def _content_text(content) -> str:
    """Normalize message content that may be a string or a list of parts."""
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for part in content:
            if isinstance(part, dict):
                if part.get("type", "text") == "text":
                    parts.append(part.get("text") or "")
            elif isinstance(part, str):
                parts.append(part)
        return "".join(parts)
    return str(content)


def _wire(messages: list) -> list[dict]:
    return [m if isinstance(m, dict) else m.to_wire() for m in messages]


def call_llm(
    messages: list,
    *,
    model: str = DEFAULT_MODEL,
    base_url: str = DEFAULT_BASE_URL,
    api_key: str | None = None,
    temperature: float | None = DEFAULT_TEMPERATURE,
    timeout: int = DEFAULT_LLM_TIMEOUT,
    stream: bool = False,
    on_delta=None,
) -> str:
    """Send ``messages`` and return the assistant text.

    With ``stream``, ``on_delta`` receives each content fragment as it
    arrives; the joined text is only returned once the stream completes.
    Every transport, HTTP or decoding failure raises NetworkFailure.
    """
    import litellm

    litellm.suppress_debug_info = True

    completion_kwargs = dict(
        model=f"openai/{model}",
        messages=_wire(messages),
        api_base=normalize_base_url(base_url),
        api_key=api_key,
        timeout=timeout,
    )
    if temperature is not None:
        completion_kwargs["temperature"] = temperature
    if stream:
        completion_kwargs["stream"] = True

    logger.debug(
        "calling %s at %s with %d messages",
        completion_kwargs["model"],
        completion_kwargs["api_base"],
        len(completion_kwargs["messages"]),
    )

    try:
        response = litellm.completion(**completion_kwargs)
        if stream:
            pieces = []
            for chunk in response:
                if not chunk.choices:
                    continue
                delta = _content_text(getattr(chunk.choices[0].delta, "content", None))
                if delta:
                    pieces.append(delta)
                    if on_delta is not None:
                        on_delta(delta)
            return "".join(pieces)
        choice = response.choices[0]
        return _content_text(choice.message.content)
    except (IndexError, AttributeError, TypeError) as e:
        raise NetworkFailure(f"unexpected LLM response: {e}") from e
    except Exception as e:
        status = getattr(e, "status_code", None)
        raise NetworkFailure(f"LLM call failed: {e}", status=status) from e
