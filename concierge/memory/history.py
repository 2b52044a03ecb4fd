from typing import Optional

from loguru import logger

from core.errors import ProviderUnavailable
from core.models import Priority, ProviderCallEnvelope, Speaker, TranscriptEntry
from core.orchestrator import ProcessOptions, RequestOrchestrator
from llm.service import LanguageService

SUMMARY_MAX_CHARS = 600
SUMMARY_RECENT_LINES = 4


def summarized_count(entries: list[TranscriptEntry]) -> int:
    """How many original dialogue entries a run of entries stands for."""
    total = 0
    for entry in entries:
        if entry.summary:
            total += int(entry.metadata.get("summarized_count", 1))
        else:
            total += 1
    return total


def truncation_summary(entries: list[TranscriptEntry]) -> str:
    """Deterministic summary: earlier summaries first, then the last few lines of dialogue."""
    carried = [e.message for e in entries if e.summary]
    dialogue = [e for e in entries if e.is_dialogue]

    parts = []
    if carried:
        parts.append(" ".join(carried))
    if dialogue:
        lines = []
        for entry in dialogue[-SUMMARY_RECENT_LINES:]:
            speaker = "Customer" if entry.role == Speaker.USER else "Assistant"
            lines.append(f"{speaker}: {entry.message.strip()[:100]}")
        parts.append(f"Earlier ({len(dialogue)} messages), ending with: " + " | ".join(lines))

    text = " ".join(parts)
    if len(text) > SUMMARY_MAX_CHARS:
        text = text[:SUMMARY_MAX_CHARS - 3].rstrip() + "..."
    return text


class HistoryOptimizer:
    """Bounds a transcript to one summary entry plus the most recent ``window`` entries.

    For N entries the output always has ``min(N, window + 1)`` entries, and
    optimizing an already-optimized list returns it unchanged. The language
    model writes the summary only when the transcript is more than twice the
    window; otherwise (or if it fails) a deterministic truncation is used.
    """

    def __init__(self, language: Optional[LanguageService], orchestrator: RequestOrchestrator,
                 timeout: float = 20.0, cache_ttl: int = 3600):
        self.language = language
        self.orchestrator = orchestrator
        self.timeout = timeout
        self.cache_ttl = cache_ttl

    async def optimize(self, entries: list[TranscriptEntry], window: int,
                       user_id: Optional[str] = None) -> list[TranscriptEntry]:
        window = max(0, window)
        if len(entries) <= window + 1:
            return list(entries)

        split = len(entries) - window
        prefix, recent = entries[:split], entries[split:]

        text, method = None, "truncation"
        if self.language is not None and len(entries) > 2 * window:
            text = await self._llm_summary(prefix, window, user_id)
            if text:
                method = "llm"
        if not text:
            text = truncation_summary(prefix)

        summary = TranscriptEntry(
            role=Speaker.SYSTEM,
            message=text,
            timestamp=prefix[-1].timestamp,
            summary=True,
            source=method,
            metadata={"summarized_count": summarized_count(prefix), "method": method},
        )
        logger.debug("History optimized: {} entries -> {} ({} summary)",
                     len(entries), len(recent) + 1, method)
        return [summary] + recent

    async def _llm_summary(self, prefix: list[TranscriptEntry], window: int,
                           user_id: Optional[str]) -> Optional[str]:
        # The summarized prefix only grows, so its size and last timestamp identify it
        key = None
        if user_id:
            key = f"summary:{user_id}:{summarized_count(prefix)}:{prefix[-1].timestamp}"
        envelope = ProviderCallEnvelope(type="summarize", payload=prefix, user_id=user_id,
                                        dedupe_key=key, priority=Priority.LOW)

        async def work(env: ProviderCallEnvelope) -> dict:
            return await self.language.summarize(env.payload, max(1, window // 2))

        try:
            data = await self.orchestrator.process(
                envelope,
                work,
                ProcessOptions(cache_key=key, cache_ttl=self.cache_ttl, service_name="llm", timeout=self.timeout),
            )
        except ProviderUnavailable as e:
            logger.warning("LLM summarization failed: {}. Using truncation summary.", e)
            return None
        summary = data.get("summary") if isinstance(data, dict) else None
        return summary.strip() if isinstance(summary, str) and summary.strip() else None
