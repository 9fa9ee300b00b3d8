from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence, Tuple

from pydantic import BaseModel, Field, ValidationError as SchemaError

from memory_engine.domain.memory_models import CandidateMemory, MemoryCategory, clamp01
from memory_engine.domain.models import ExtractionRequest, Message
from memory_engine.ports.llm import TextGenerator

log = logging.getLogger(__name__)

EXPLICIT_TAGS = ["explicit", "user-requested"]


def _clean(val: str) -> str:
    val = " ".join(val.strip().split())
    return val.rstrip(" .!,;:")


def _captured(m: "re.Match[str]") -> Optional[str]:
    val = _clean(m.group(1) or "")
    return val or None


@dataclass(frozen=True)
class ExplicitPattern:
    """One directive form. `handler` turns a match into memory text, or None to pass."""
    name: str
    regex: "re.Pattern[str]"
    handler: Callable[["re.Match[str]"], Optional[str]] = _captured

    def apply(self, text: str) -> Optional[str]:
        m = self.regex.search(text)
        return self.handler(m) if m else None


# Order matters: the first pattern that yields content wins for a message.
EXPLICIT_PATTERNS: Tuple[ExplicitPattern, ...] = (
    ExplicitPattern("remember", re.compile(r"remember (?:that |this )?(.+)", re.IGNORECASE)),
    ExplicitPattern(
        "save_to_memory",
        re.compile(r"(?:please )?save (?:to memory |this )(?:that |this )?(.+)", re.IGNORECASE),
    ),
    ExplicitPattern("dont_forget", re.compile(r"(?:don't |never )forget (?:that |this )?(.+)", re.IGNORECASE)),
    ExplicitPattern("keep_in_mind", re.compile(r"keep in mind (?:that |this )?(.+)", re.IGNORECASE)),
    ExplicitPattern("note", re.compile(r"note (?:that |this )?(.+)", re.IGNORECASE)),
)


EXTRACTION_SYSTEM_PROMPT = """You are a memory extraction assistant. Your job is to analyze conversations and extract important facts that should be remembered about the user.

Extract facts that are:
- Personal information (name, role, preferences, etc.)
- Context about ongoing projects or goals
- Important preferences or dislikes
- Relationships with people or organizations
- Skills, expertise, or abilities
- Specific facts the user wants remembered
- Long-term context that would be useful in future conversations

Do NOT extract:
- Generic conversational filler
- Temporary context that's only relevant to the current conversation
- Obvious or trivial information
- Information already well-known (like common knowledge)

For each fact you extract, provide:
1. The memory content (concise, 1-2 sentences max)
2. An importance score from 0-1 (how important is this to remember?)
3. A category (user_info, preferences, context, relationships, skills, history, facts, other)
4. Relevant tags for organization
5. Brief context about why this is important

Return your analysis as a JSON array of objects with the keys "content", "importance", "category", "tags" and "context". If no important facts are found, return an empty array."""

_ARRAY_RE = re.compile(r"\[[\s\S]*\]")


class ExtractedItem(BaseModel):
    content: str = Field(min_length=1)
    importance: float
    category: str = "other"
    tags: List[str] = Field(default_factory=list)
    context: str = ""


def build_transcript(messages: Sequence[Message]) -> str:
    return "\n\n".join(f"{m.role.upper()}: {m.content}" for m in messages)


def parse_candidates(text: str, min_importance: float) -> List[CandidateMemory]:
    """
    Pulls the first bracketed JSON array out of model output and validates each
    item on its own. Bad items are skipped, not fatal.
    """
    m = _ARRAY_RE.search(text or "")
    if not m:
        log.warning("no JSON array found in extraction response")
        return []

    try:
        raw = json.loads(m.group(0))
    except json.JSONDecodeError as e:
        log.warning("failed to parse extraction JSON: %s", e)
        return []
    if not isinstance(raw, list):
        return []

    out: List[CandidateMemory] = []
    for item in raw:
        try:
            parsed = ExtractedItem.model_validate(item)
        except SchemaError as e:
            log.debug("skipping malformed extraction item: %s", e.error_count())
            continue
        content = _clean(parsed.content)
        if not content or parsed.importance < min_importance:
            continue
        out.append(
            CandidateMemory(
                content=content,
                importance=clamp01(parsed.importance),
                category=MemoryCategory.parse(parsed.category),
                tags=[t.strip() for t in parsed.tags if t and t.strip()],
                context=parsed.context.strip(),
            )
        )
    return out


@dataclass
class MemoryExtractor:
    llm: TextGenerator
    model: str = "openai/gpt-4o-mini"
    min_importance: float = 0.4
    explicit_importance: float = 0.9
    max_transcript_messages: int = 20
    max_output_tokens: int = 2000
    min_message_chars: int = 20

    @staticmethod
    def detect_explicit(text: str) -> Optional[str]:
        for pattern in EXPLICIT_PATTERNS:
            content = pattern.apply(text or "")
            if content:
                return content
        return None

    def _explicit_candidate(self, content: str) -> CandidateMemory:
        return CandidateMemory(
            content=content,
            importance=self.explicit_importance,
            category=MemoryCategory.USER_INFO,
            tags=list(EXPLICIT_TAGS),
            context=f'User explicitly requested to remember: "{content}"',
        )

    def extract_explicit(self, messages: Sequence[Message]) -> List[CandidateMemory]:
        out: List[CandidateMemory] = []
        for m in messages:
            if m.role != "user":
                continue
            content = self.detect_explicit(m.content)
            if content:
                out.append(self._explicit_candidate(content))
        return out

    async def extract_auto(self, messages: Sequence[Message], api_key: Optional[str]) -> List[CandidateMemory]:
        """Best effort: every failure is logged and becomes an empty list."""
        recent = [m for m in messages if m.role in ("user", "assistant")][-self.max_transcript_messages:]
        if not recent or not api_key:
            return []

        prompt = (
            "Analyze this conversation and extract important facts to remember:\n\n"
            f"{build_transcript(recent)}\n\n"
            "Return a JSON array of extracted memories (or empty array if none found)."
        )
        try:
            resp = await self.llm.generate(
                [Message(role="system", content=EXTRACTION_SYSTEM_PROMPT), Message(role="user", content=prompt)],
                model=self.model,
                api_key=api_key,
                max_output_tokens=self.max_output_tokens,
            )
        except Exception as e:
            log.warning("automatic memory extraction failed: %s", e)
            return []

        return parse_candidates(resp.text, self.min_importance)

    async def extract_all(self, request: ExtractionRequest, api_key: Optional[str]) -> List[CandidateMemory]:
        explicit = self.extract_explicit(request.messages)
        auto = await self.extract_auto(request.messages, api_key)
        return explicit + auto

    async def extract_from_message(
        self,
        text: str,
        history: Sequence[Message],
        api_key: Optional[str],
    ) -> List[CandidateMemory]:
        content = self.detect_explicit(text)
        if content:
            return [self._explicit_candidate(content)]

        if len(text or "") < self.min_message_chars:
            return []

        recent = list(history)[-2:] + [Message(role="user", content=text)]
        return await self.extract_auto(recent, api_key)
