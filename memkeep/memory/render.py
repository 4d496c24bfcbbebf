"""Rendering helpers for memory prompt context."""

from __future__ import annotations

from memkeep.memory.models import MemoryRecord
from memkeep.memory.text import compact


def render_recall(memories: list[MemoryRecord], max_chars: int = 2400) -> str:
    """Render bounded memory text for prompt injection as system context."""
    if not memories:
        return ""

    lines = [
        "[Retrieved Memory]",
        "Facts the user shared in earlier conversations. Prefer TIER1 and recent items.",
    ]

    for record in memories:
        content = compact(record.content, 220)
        line = f"- ({record.tier.value} priority={record.priority:.2f} updated={record.updated_at[:10]}) {content}"
        candidate = "\n".join(lines + [line])
        if len(candidate) > max_chars:
            break
        lines.append(line)

    if len(lines) == 2:
        return ""
    rendered = "\n".join(lines)
    if len(rendered) <= max_chars:
        return rendered
    return rendered[:max_chars]
