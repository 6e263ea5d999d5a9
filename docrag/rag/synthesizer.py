# =============================================================================
# Answer Synthesizer — Grounded Generation With Citations
# =============================================================================
#
# Turns retrieved chunks into an answer. The retrieval graph only calls this
# when at least one chunk survived search and filtering; "no content" is
# decided upstream and never reaches the LLM.
#
# PROMPT SHAPE:
#   system:  grounding rules + style instruction + citation instruction
#   user:    question + numbered context ([Source 1], [Source 2], ...)
#
# FAILURE MODE: Generation errors are NOT raised. The caller still gets the
# retrieved chunks, so the synthesizer returns them verbatim with a note and
# flags `generation_failed=True`. The retrieval result stays success=true.
# =============================================================================

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import assert_never

from docrag.errors import GenerationError
from docrag.rag.schemas import ResponseStyle, RetrievedChunk, SynthesisResult
from docrag.services.llm import LLMProvider

logger = logging.getLogger(__name__)

GENERATION_FAILED_NOTE = (
    "I found relevant information but couldn't generate a response. "
    "Please refer to the source chunks below."
)

_BASE_SYSTEM_PROMPT = (
    "You answer questions using ONLY the context taken from the user's "
    "documents.\n\n"
    "Rules:\n"
    "- Only use information from the provided context\n"
    "- If the context doesn't contain enough information to fully answer "
    "the question, say so\n"
    "- Be accurate and don't make assumptions beyond what's stated in the "
    "context\n"
    "- {style}"
)

_CITE = (
    "\n\nIMPORTANT: When referencing information, cite the sources using "
    "[Source X] format where X is the source number."
)
_NO_CITE = "\n\nDo not include source citations in your response."


def style_instruction(style: ResponseStyle) -> str:
    match style:
        case ResponseStyle.CONCISE:
            return "Provide a brief, to-the-point answer."
        case ResponseStyle.DETAILED:
            return "Provide a comprehensive, well-structured answer with explanations."
        case ResponseStyle.ACADEMIC:
            return "Use formal, academic language with proper analysis and reasoning."
        case ResponseStyle.CONVERSATIONAL:
            return "Use a friendly, conversational tone as if explaining to a colleague."
        case _:
            assert_never(style)


def build_system_prompt(style: ResponseStyle, include_citations: bool) -> str:
    prompt = _BASE_SYSTEM_PROMPT.format(style=style_instruction(style))
    return prompt + (_CITE if include_citations else _NO_CITE)


def format_context(chunks: Sequence[RetrievedChunk]) -> str:
    """
    Number chunks for citation.

    Example output:
        [Source 1] (report.pdf):
        Revenue grew 15% year over year...

        ---

        [Source 2]:
        Operating costs fell...
    """
    sections = []
    for i, chunk in enumerate(chunks, 1):
        label = f" ({chunk.source.document_name})" if chunk.source else ""
        sections.append(f"[Source {i}]{label}:\n{chunk.content}")
    return "\n\n---\n\n".join(sections)


def fallback_answer(chunks: Sequence[RetrievedChunk]) -> str:
    return f"{GENERATION_FAILED_NOTE}\n\n{format_context(chunks)}"


class AnswerSynthesizer:
    """Wraps an LLMProvider with the grounding prompt and fallback."""

    def __init__(self, llm: LLMProvider) -> None:
        self._llm = llm

    async def synthesize(
        self,
        query: str,
        chunks: Sequence[RetrievedChunk],
        style: ResponseStyle = ResponseStyle.DETAILED,
        include_citations: bool = True,
    ) -> SynthesisResult:
        if not chunks:
            raise ValueError("synthesize() requires at least one chunk")

        style = ResponseStyle(style)
        user_message = (
            f"QUESTION: {query}\n\n"
            f"CONTEXT ({len(chunks)} sources):\n\n{format_context(chunks)}\n\n"
            "ANSWER:"
        )

        logger.info(
            "Synthesizing answer: style=%s, sources=%d, citations=%s",
            style.value, len(chunks), include_citations,
        )

        try:
            response = await self._llm.complete(
                messages=[{"role": "user", "content": user_message}],
                system=build_system_prompt(style, include_citations),
            )
        except Exception as exc:
            logger.exception("Answer generation failed")
            error = GenerationError(f"Answer generation failed: {exc}")
            return SynthesisResult(
                answer=fallback_answer(chunks),
                model="n/a",
                generation_failed=True,
                error=error.to_error_info(),
            )

        if not response.content.strip():
            error = GenerationError("Provider returned an empty answer.")
            return SynthesisResult(
                answer=fallback_answer(chunks),
                model=response.model,
                input_tokens=response.input_tokens,
                output_tokens=response.output_tokens,
                generation_failed=True,
                error=error.to_error_info(),
            )

        logger.info(
            "Synthesis complete: model=%s, tokens=%d+%d",
            response.model, response.input_tokens, response.output_tokens,
        )
        return SynthesisResult(
            answer=response.content,
            model=response.model,
            input_tokens=response.input_tokens,
            output_tokens=response.output_tokens,
        )
