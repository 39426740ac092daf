"""
Decision Analysis - Gemini narrative for a closed round

Responsibilities:
- Build the analysis prompt from the ranking snapshot (pure, testable)
- Call Gemini with automatic retry on 429 rate limits
- Surface every failure as LLMError so the aggregator can drop the narrative
"""

import asyncio
import re
from typing import Any, Dict, List, Optional

from google import genai
from google.genai import types

from config import get_logger
from database.models import ProposalRanking
from exceptions import ConfigurationError, LLMError

logger = get_logger(__name__).bind(component="decision_analysis")

SYSTEM_INSTRUCTION = (
    "You are a helpful assistant that analyzes group decision-making results. "
    "You provide actionable insights while acknowledging minority perspectives."
)

TOP_RESULTS = 5
MINORITY_MIN_PERCENT = 10
MINORITY_MIN_RANK = 4
MAX_CONSENSUS_LINES = 10


def _truncate(text: str, limit: int) -> str:
    return text[:limit] + "..." if len(text) > limit else text


def _format_percent(value: int) -> str:
    return f"{value:g}%"


def _format_change(change: Optional[int]) -> str:
    if change is None:
        return ""
    sign = "+" if change > 0 else ""
    return f" [{sign}{change} from previous round]"


def _movement_line(ranking: ProposalRanking) -> Optional[str]:
    change = ranking.change_from_previous
    if change is None:
        return None
    text = _truncate(ranking.statement_text, 50)
    if change > 0:
        return f'- "{text}" moved UP {change} position(s)'
    if change < 0:
        return f'- "{text}" moved DOWN {abs(change)} position(s)'
    return f'- "{text}" stayed at same position'


def build_analysis_prompt(context: Dict[str, Any]) -> str:
    """Render the analysis prompt for one round.

    Args:
        context: Mapping with session_title, round_number, total_voters,
            rankings (List[ProposalRanking]), previous_rankings (or None) and
            source_consensus (list of {statement_text, agree_percent})

    Returns:
        Prompt text
    """
    rankings: List[ProposalRanking] = context["rankings"]
    top = rankings[:TOP_RESULTS]
    minority = [
        r for r in rankings
        if r.vote_percent >= MINORITY_MIN_PERCENT and r.rank >= MINORITY_MIN_RANK
    ]
    consensus = context.get("source_consensus") or []

    sections = [
        f'You are analysing the results of a group decision-making session titled '
        f'"{context["session_title"]}".',
        f"## Voting Results (Round {context['round_number']})",
        f"Total voters: {context['total_voters']}",
        "### Top Outcomes (by vote count):\n" + "\n".join(
            f'{r.rank}. "{r.statement_text}" - {r.total_votes} votes '
            f"({_format_percent(r.vote_percent)}){_format_change(r.change_from_previous)}"
            for r in top
        ),
    ]

    if minority:
        sections.append(
            "### Notable Minority Positions (10%+ votes but not top 3):\n" + "\n".join(
                f'- "{r.statement_text}" - {r.total_votes} votes '
                f"({_format_percent(r.vote_percent)})"
                for r in minority
            )
        )

    if consensus:
        sections.append(
            "### Original Consensus Data (from understand session):\n" + "\n".join(
                f'- "{_truncate(s["statement_text"], 100)}" - '
                f'{_format_percent(s["agree_percent"])} agreement'
                for s in consensus[:MAX_CONSENSUS_LINES]
            )
        )

    if context.get("previous_rankings"):
        movements = [line for line in (_movement_line(r) for r in top) if line]
        sections.append("### Comparison to Previous Round:\n" + "\n".join(movements))

    sections.append(
        """---

Generate a decision analysis document with these sections:

## Decision Summary
1-2 paragraphs summarizing what was decided, participation, and vote distribution.

## Top Outcomes
Explain the top 3-5 voted items and why they may have resonated with the group.

## Minority Perspectives
Acknowledge items that received significant (10%+) votes but didn't win. These represent important dissent.

## Comparison to Original Consensus
How do the voting results align with the original understand session's feedback consensus? Note any interesting validations or tensions.

## Recommended Next Steps
Concrete actionable items based on results.

## Suggested Follow-up Sessions
Recommend 2-3 specific follow-up sessions, such as:
- "Run an understand session to explore [topic] further"
- "Create a decide session focused on implementation options for [winning proposal]"
- "Gather feedback on [area of tension] before proceeding"

Keep the analysis concise but actionable. Use markdown formatting."""
    )

    return "\n\n".join(sections)


class DecisionAnalyst:
    """Gemini-backed AnalysisGenerator"""

    def __init__(
        self,
        api_key: str,
        model_name: str = "gemini-2.5-flash",
        max_retries: int = 3,
    ):
        if not api_key:
            raise ConfigurationError("API key required - set GEMINI_API_KEY", config_key="GEMINI_API_KEY")
        self.client = genai.Client(api_key=api_key)
        self.model_name = model_name
        self.max_retries = max_retries

    async def generate(self, context: Dict[str, Any]) -> Optional[str]:
        prompt = build_analysis_prompt(context)
        config = types.GenerateContentConfig(
            system_instruction=SYSTEM_INSTRUCTION,
            temperature=0.7,
            max_output_tokens=2000,
        )

        try:
            response = await self._call_with_retry(prompt, config)
        except LLMError:
            raise
        except Exception as e:
            logger.error("decision analysis call failed", error=str(e), error_type=type(e).__name__)
            raise LLMError(
                "Decision analysis failed", model=self.model_name, original_error=e
            ) from e

        if not response.text:
            raise LLMError("Gemini returned no text in response", model=self.model_name)
        return response.text

    async def _call_with_retry(self, prompt: str, config):
        """Call Gemini, waiting out 429s using the retryDelay Gemini reports"""
        last_error = None

        for attempt in range(self.max_retries):
            try:
                return await self.client.aio.models.generate_content(
                    model=self.model_name, contents=prompt, config=config
                )
            except Exception as e:
                last_error = e
                error_str = str(e)

                if "429" in error_str or "RESOURCE_EXHAUSTED" in error_str:
                    retry_match = re.search(r'"retryDelay":\s*"(\d+)s"', error_str)
                    if retry_match:
                        delay = int(retry_match.group(1)) + 1
                    else:
                        delay = 5 * (attempt + 1)

                    logger.warning(
                        "rate limited by gemini, waiting for retry",
                        attempt=attempt + 1,
                        max_retries=self.max_retries,
                        delay_seconds=delay,
                    )
                    await asyncio.sleep(delay)
                    continue

                raise

        raise LLMError(
            f"Max retries ({self.max_retries}) exceeded due to rate limiting",
            model=self.model_name,
            original_error=last_error,
        )
