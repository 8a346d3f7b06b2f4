# playground/services/pricing.py
from dataclasses import dataclass
from typing import Dict, Optional, Tuple


@dataclass(frozen=True)
class Rate:
    """USD per one million tokens."""
    input: float
    output: float


DEFAULT_RATE = Rate(3.0, 15.0)

# keyed by (provider, model); model "*" is the provider-wide fallback
RATES: Dict[Tuple[str, str], Rate] = {
    ("anthropic", "claude-3-5-sonnet-20241022"): Rate(3.0, 15.0),
    ("anthropic", "claude-3-5-sonnet-20240620"): Rate(3.0, 15.0),
    ("anthropic", "claude-3-opus-20240229"): Rate(15.0, 75.0),
    ("anthropic", "claude-3-sonnet-20240229"): Rate(3.0, 15.0),
    ("anthropic", "claude-3-haiku-20240307"): Rate(0.25, 1.25),
    ("openai", "gpt-4-turbo"): Rate(10.0, 30.0),
    ("openai", "gpt-4"): Rate(30.0, 60.0),
    ("openai", "gpt-4-32k"): Rate(60.0, 120.0),
    ("openai", "gpt-3.5-turbo"): Rate(0.5, 1.5),
    ("openai", "gpt-3.5-turbo-16k"): Rate(3.0, 4.0),
    # local models cost nothing
    ("ollama", "*"): Rate(0.0, 0.0),
}


def rate_for(provider: Optional[str], model: Optional[str]) -> Rate:
    """Exact (provider, model), then the provider wildcard, then DEFAULT_RATE. Never raises."""
    p = (provider or "").strip().lower()
    m = (model or "").strip()
    return RATES.get((p, m)) or RATES.get((p, "*")) or DEFAULT_RATE


def calculate_cost(provider: Optional[str], model: Optional[str], input_tokens: int, output_tokens: int) -> float:
    rate = rate_for(provider, model)
    return (max(0, input_tokens) * rate.input + max(0, output_tokens) * rate.output) / 1_000_000


def format_cost(cost: float) -> str:
    # below one cent, show cents
    if cost < 0.01:
        return f"{cost * 100:.4f}¢"
    return f"${cost:.4f}"


def format_tokens(tokens: int) -> str:
    if tokens >= 1_000_000:
        return f"{tokens / 1_000_000:.2f}M"
    if tokens >= 1_000:
        return f"{tokens / 1_000:.1f}K"
    return str(tokens)
