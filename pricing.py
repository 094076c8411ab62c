import re
from dataclasses import dataclass
from enum import Enum


class CostProvider(str, Enum):
    CODEX = "codex"  # cumulative-counter logs, [input, cached, output]
    CLAUDE = "claude"  # per-message logs, [input, cache_read, cache_create, output, cost_nanos]
    COPILOT = "copilot"  # premium requests, flat rate per request


@dataclass(frozen=True)
class ModelPrice:
    input: float
    output: float
    cache_read: float
    cache_creation: float | None = None
    threshold_tokens: int | None = None
    input_above: float | None = None
    output_above: float | None = None
    cache_read_above: float | None = None
    cache_creation_above: float | None = None


@dataclass(frozen=True)
class RequestPrice:
    per_request: float
    display_name: str


@dataclass(frozen=True)
class TokenCounts:
    input: int = 0
    cache_read: int = 0
    cache_creation: int = 0
    output: int = 0


# Prices are USD per token
_CODEX_PRICES: dict[str, ModelPrice] = {
    "gpt-5": ModelPrice(1.25e-6, 1e-5, 1.25e-7),
    "gpt-5-codex": ModelPrice(1.25e-6, 1e-5, 1.25e-7),
    "gpt-5.1": ModelPrice(1.25e-6, 1e-5, 1.25e-7),
    "gpt-5.2": ModelPrice(1.75e-6, 1.4e-5, 1.75e-7),
    "gpt-5.2-codex": ModelPrice(1.75e-6, 1.4e-5, 1.75e-7),
    "gpt-4o": ModelPrice(2.5e-6, 10e-6, 1.25e-6),
    "gpt-4o-mini": ModelPrice(0.15e-6, 0.6e-6, 0.075e-6),
    "gpt-4-turbo": ModelPrice(10e-6, 30e-6, 5e-6),
    "gpt-4": ModelPrice(30e-6, 60e-6, 15e-6),
    "o1": ModelPrice(15e-6, 60e-6, 7.5e-6),
    "o1-mini": ModelPrice(3e-6, 12e-6, 1.5e-6),
    "o3": ModelPrice(10e-6, 40e-6, 5e-6),
    "o3-mini": ModelPrice(1.1e-6, 4.4e-6, 0.55e-6),
}

_HAIKU_45 = ModelPrice(1e-6, 5e-6, 1e-7, 1.25e-6)
_OPUS_45 = ModelPrice(5e-6, 2.5e-5, 5e-7, 6.25e-6)
_OPUS_4 = ModelPrice(1.5e-5, 7.5e-5, 1.5e-6, 1.875e-5)
_SONNET_TIERED = ModelPrice(
    3e-6, 1.5e-5, 3e-7, 3.75e-6,
    threshold_tokens=200_000,
    input_above=6e-6,
    output_above=2.25e-5,
    cache_read_above=6e-7,
    cache_creation_above=7.5e-6,
)
_SONNET_FLAT = ModelPrice(3e-6, 1.5e-5, 3e-7, 3.75e-6)

_CLAUDE_PRICES: dict[str, ModelPrice] = {
    "claude-haiku-4-5": _HAIKU_45,
    "claude-haiku-4-5-20251001": _HAIKU_45,
    "claude-opus-4-5": _OPUS_45,
    "claude-opus-4-5-20251101": _OPUS_45,
    "claude-sonnet-4-5": _SONNET_TIERED,
    "claude-sonnet-4-5-20250929": _SONNET_TIERED,
    "claude-opus-4-1": _OPUS_4,
    "claude-opus-4-20250514": _OPUS_4,
    "claude-sonnet-4-20250514": _SONNET_TIERED,
    "claude-3-5-sonnet": _SONNET_FLAT,
    "claude-3-5-sonnet-20241022": _SONNET_FLAT,
    "claude-3-5-haiku": ModelPrice(1e-6, 5e-6, 1e-7, 1.25e-6),
    "claude-3-opus": _OPUS_4,
    "claude-3-sonnet": _SONNET_FLAT,
    "claude-3-haiku": ModelPrice(2.5e-7, 1.25e-6, 3e-8, 3e-7),
}

# Insertion order matters for the substring fallback
_COPILOT_PRICES: dict[str, RequestPrice] = {
    "claude opus 4.5": RequestPrice(0.08, "Opus 4.5"),
    "claude sonnet 4.5": RequestPrice(0.04, "Sonnet 4.5"),
    "claude sonnet 3.5": RequestPrice(0.03, "Sonnet 3.5"),
    "claude 3.5 sonnet": RequestPrice(0.03, "Sonnet 3.5"),
    "claude 3 opus": RequestPrice(0.06, "Opus 3"),
    "gpt-4o": RequestPrice(0.02, "GPT-4o"),
    "gpt-4": RequestPrice(0.04, "GPT-4"),
    "gpt-5": RequestPrice(0.05, "GPT-5"),
    "o1-preview": RequestPrice(0.06, "o1"),
    "o1-mini": RequestPrice(0.03, "o1-mini"),
    "o1": RequestPrice(0.06, "o1"),
    "o3-mini": RequestPrice(0.04, "o3-mini"),
    "o3": RequestPrice(0.08, "o3"),
    "gemini 2.5 pro": RequestPrice(0.04, "Gemini 2.5"),
    "gemini 2.0 flash": RequestPrice(0.02, "Gemini Flash"),
    "gemini 3 flash": RequestPrice(0.02, "Gemini Flash"),
    "gemini 3 pro": RequestPrice(0.04, "Gemini Pro"),
    "gemini flash": RequestPrice(0.02, "Gemini Flash"),
}
_COPILOT_DEFAULT = RequestPrice(0.04, "Unknown")

_VERTEX_VERSION_RE = re.compile(r"@.*$")
_BEDROCK_VERSION_RE = re.compile(r"-v\d+:\d+$")
_DATE_SUFFIX_RE = re.compile(r"-\d{8}$")


def _strip_prefix(name: str, prefix: str) -> str:
    if name.lower().startswith(prefix):
        return name[len(prefix):]
    return name


def normalize_codex_model(raw: str) -> str:
    name = _strip_prefix(raw.strip(), "openai/")
    idx = name.lower().find("-codex")
    if idx > 0 and name[:idx] in _CODEX_PRICES:
        return name[:idx]
    dated = _DATE_SUFFIX_RE.search(name)
    if dated and name[:dated.start()] in _CODEX_PRICES:
        return name[:dated.start()]
    return name


def normalize_claude_model(raw: str) -> str:
    name = _strip_prefix(raw.strip(), "anthropic.")
    name = _VERTEX_VERSION_RE.sub("", name)  # claude-opus-4-5@20251101
    name = _BEDROCK_VERSION_RE.sub("", name)  # ...-20250929-v1:0
    dated = _DATE_SUFFIX_RE.search(name)
    if dated and name[:dated.start()] in _CLAUDE_PRICES:
        return name[:dated.start()]
    return name


def normalize_model(provider: CostProvider | str, raw: str) -> str:
    provider = CostProvider(provider)
    if provider is CostProvider.CODEX:
        return normalize_codex_model(raw)
    if provider is CostProvider.CLAUDE:
        return normalize_claude_model(raw)
    return raw.strip()


def _tiered(tokens: int, base: float, above: float | None, threshold: int | None) -> float:
    tokens = max(0, tokens)
    if threshold is None or above is None:
        return tokens * base
    below = min(tokens, threshold)
    return below * base + max(tokens - threshold, 0) * above


def codex_cost_usd(model: str, input_tokens: int, cached_input_tokens: int, output_tokens: int) -> float | None:
    price = _CODEX_PRICES.get(normalize_codex_model(model))
    if price is None:
        return None
    # Cached tokens are a subset of input and billed at the cache-read rate
    cached = min(max(0, cached_input_tokens), max(0, input_tokens))
    non_cached = max(0, input_tokens - cached)
    return non_cached * price.input + cached * price.cache_read + max(0, output_tokens) * price.output


def claude_cost_usd(
    model: str,
    input_tokens: int,
    cache_read_tokens: int,
    cache_creation_tokens: int,
    output_tokens: int,
) -> float | None:
    price = _CLAUDE_PRICES.get(normalize_claude_model(model))
    if price is None:
        return None
    threshold = price.threshold_tokens
    creation_rate = price.cache_creation if price.cache_creation is not None else price.input
    return (
        _tiered(input_tokens, price.input, price.input_above, threshold)
        + _tiered(cache_read_tokens, price.cache_read, price.cache_read_above, threshold)
        + _tiered(cache_creation_tokens, creation_rate, price.cache_creation_above, threshold)
        + _tiered(output_tokens, price.output, price.output_above, threshold)
    )


def _copilot_price(model: str) -> RequestPrice:
    if not model or not model.strip():
        return _COPILOT_DEFAULT
    lowered = model.strip().lower()
    exact = _COPILOT_PRICES.get(lowered)
    if exact is not None:
        return exact
    for family, price in _COPILOT_PRICES.items():
        if family in lowered:
            return price
    return _COPILOT_DEFAULT


def copilot_cost_usd(model: str, request_count: float) -> float | None:
    if request_count <= 0:
        return None
    return request_count * _copilot_price(model).per_request


def cost_usd(
    provider: CostProvider | str,
    model: str,
    tokens: TokenCounts | None = None,
    requests: float = 0,
) -> float | None:
    """Cost of one usage sample, or None when the model has no known price.

    None means "unknown", callers must not add it up as zero.
    """
    provider = CostProvider(provider)
    if provider is CostProvider.COPILOT:
        return copilot_cost_usd(model, requests)
    tokens = tokens or TokenCounts()
    if provider is CostProvider.CODEX:
        return codex_cost_usd(model, tokens.input, tokens.cache_read, tokens.output)
    return claude_cost_usd(model, tokens.input, tokens.cache_read, tokens.cache_creation, tokens.output)


def copilot_display_name(model: str) -> str:
    if not model or not model.strip():
        return "Unknown"
    return _copilot_price(model).display_name


def model_display_name(model: str) -> str:
    name = _strip_prefix(_strip_prefix(model.strip(), "openai/"), "anthropic.")
    return _DATE_SUFFIX_RE.sub("", name)
