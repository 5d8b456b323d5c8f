"""Token estimation and cost calculation shared by every platform."""

CHARS_PER_TOKEN = 4


def estimate_tokens(text: str) -> int:
    """Rough token count: about four characters per token.

    Used wherever a backend does not report its own counters, so every
    platform approximates the same way.
    """
    if not text:
        return 0
    return len(text) // CHARS_PER_TOKEN


def calculate_cost(total_tokens: int, cost_per_million_tokens: float) -> float:
    """Cost in USD for a call billed at a flat per-million-token rate."""
    if total_tokens <= 0 or cost_per_million_tokens <= 0:
        return 0.0
    return round(total_tokens * cost_per_million_tokens / 1_000_000, 8)


def format_size(size_in_bytes: int) -> str:
    """Human readable size for model listings ("1.3 GB")."""
    size = float(size_in_bytes or 0)
    for unit, factor in (("GB", 1 << 30), ("MB", 1 << 20), ("KB", 1 << 10)):
        if size >= factor:
            return f"{size / factor:.1f} {unit}"
    return f"{int(size)} B"
