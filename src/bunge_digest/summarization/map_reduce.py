"""Hierarchical map-reduce summarization.

Map: one fragment per transcript window. Reduce: while the fragments do not
fit the synthesis budget, merge consecutive fragments in batches. Synthesis:
one final call over the remaining fragments.

Every reduce round must strictly shrink the fragment count and the number
of rounds is capped, so the reduce loop always terminates.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

from ..config_constants import DEFAULT_MAP_PROMPT, DEFAULT_REDUCE_PROMPT, DEFAULT_SYNTHESIS_PROMPT
from ..exceptions import CapacityError, StageError
from ..models import StreamStatus, SummaryFragment
from ..prompt_store import prompt_hash, render_prompt
from ..utils.concurrency import CallGate, Deadline, fan_out, ordered
from ..utils.retry import call_with_retry, RetryPolicy
from .base import SummarizationProvider
from .budget import estimate_tokens, SummaryBudget
from .chunking import plan_windows, tail_text

logger = logging.getLogger(__name__)

FRAGMENT_SEPARATOR = "\n\n"


@dataclass
class SummarizationTrace:
    """What the engine did for one stream.

    Attributes:
        window_count: Windows produced by the map phase
        round_fragment_counts: Fragment count after the map phase and after
            each reduce round
        calls: Provider calls made (map + reduce + synthesis)
    """

    window_count: int = 0
    round_fragment_counts: List[int] = field(default_factory=list)
    calls: int = 0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def count_call(self) -> None:
        with self._lock:
            self.calls += 1

    @property
    def reduce_rounds(self) -> int:
        return max(0, len(self.round_fragment_counts) - 1)


@dataclass
class SummaryResult:
    text: str
    model_version: str
    trace: SummarizationTrace
    prompts: Dict[str, str] = field(default_factory=dict)


def join_fragments(texts: Sequence[str]) -> str:
    return FRAGMENT_SEPARATOR.join(t.strip() for t in texts)


def plan_batches(
    texts: Sequence[str], batch_tokens: int, chars_per_token: float
) -> List[List[int]]:
    """Group consecutive fragments whose joined text fits ``batch_tokens``.

    A fragment that does not fit even on its own becomes a singleton batch;
    the caller decides whether that still makes progress.
    """
    batches: List[List[int]] = []
    current: List[int] = []
    for i in range(len(texts)):
        candidate = current + [i]
        joined = join_fragments([texts[j] for j in candidate])
        if current and estimate_tokens(joined, chars_per_token) > batch_tokens:
            batches.append(current)
            current = [i]
        else:
            current = candidate
    if current:
        batches.append(current)
    return batches


class MapReduceSummarizer:
    """Runs map, reduce rounds and synthesis for one transcript.

    Args:
        provider: Summarization provider
        budget: Token budgets
        retry_policy: Retry policy for each provider call
        gate: Global call gate
        fanout: Maximum concurrent calls within one phase for this stream
        carried_context_source: "fragment" chains map calls in window order,
            each seeing the tail of the previous fragment; "transcript" gives
            each window the tail of the previous window's text so all windows
            run concurrently
        max_reduce_rounds: Hard cap on reduce rounds
    """

    def __init__(
        self,
        provider: SummarizationProvider,
        budget: SummaryBudget,
        retry_policy: RetryPolicy,
        gate: CallGate,
        fanout: int = 1,
        carried_context_source: str = "fragment",
        max_reduce_rounds: int = 8,
        map_prompt: str = DEFAULT_MAP_PROMPT,
        reduce_prompt: str = DEFAULT_REDUCE_PROMPT,
        synthesis_prompt: str = DEFAULT_SYNTHESIS_PROMPT,
    ) -> None:
        if carried_context_source not in ("fragment", "transcript"):
            raise ValueError(f"Unknown carried_context_source: {carried_context_source}")
        self.provider = provider
        self.budget = budget
        self.retry_policy = retry_policy
        self.gate = gate
        self.fanout = fanout
        self.carried_context_source = carried_context_source
        self.max_reduce_rounds = max_reduce_rounds
        self.map_prompt = map_prompt
        self.reduce_prompt = reduce_prompt
        self.synthesis_prompt = synthesis_prompt

    def prompt_hashes(self, reduced: bool = True) -> Dict[str, str]:
        """Template name -> source SHA256 for every prompt a summary went through."""
        names = [self.map_prompt]
        if reduced:
            names.append(self.reduce_prompt)
        names.append(self.synthesis_prompt)
        system_prompt = getattr(self.provider, "system_prompt_name", None)
        if isinstance(system_prompt, str):
            names.insert(0, system_prompt)
        return {name: prompt_hash(name) for name in names}

    def plan_windows(self, transcript: str) -> List[str]:
        return plan_windows(transcript, self.budget.window_tokens, self.budget.chars_per_token)

    def plan_batches(self, fragments: Sequence[SummaryFragment]) -> List[List[int]]:
        return plan_batches(
            [f.text for f in fragments], self.budget.batch_tokens, self.budget.chars_per_token
        )

    def _call(
        self,
        text: str,
        instruction: str,
        context: Optional[str],
        description: str,
        deadline: Optional[Deadline],
        trace: SummarizationTrace,
    ) -> str:
        def attempt() -> str:
            trace.count_call()
            return self.gate.call(lambda: self.provider.summarize(text, instruction, context))

        return call_with_retry(
            attempt,
            self.retry_policy,
            description=description,
            before_attempt=deadline.check if deadline else None,
        )

    def _map(
        self,
        stream_id: str,
        windows: List[str],
        params: Dict[str, Any],
        deadline: Optional[Deadline],
        trace: SummarizationTrace,
    ) -> List[SummaryFragment]:
        count = len(windows)
        carried_chars = self.budget.carried_context_chars

        def instruction(i: int, has_context: bool) -> str:
            return render_prompt(
                self.map_prompt,
                window_number=i + 1,
                window_count=count,
                has_context=has_context,
                **params,
            )

        def summarize_window(i: int, context: Optional[str]) -> SummaryFragment:
            text = self._call(
                windows[i],
                instruction(i, bool(context)),
                context or None,
                f"[{stream_id}] Summarize window {i + 1}/{count}",
                deadline,
                trace,
            )
            return SummaryFragment(index=i, text=text, source_range=(i, i), round=0)

        if self.carried_context_source == "fragment" and carried_chars > 0 and count > 1:
            fragments: List[SummaryFragment] = []
            for i in range(count):
                context = tail_text(fragments[-1].text, carried_chars) if fragments else None
                try:
                    fragments.append(summarize_window(i, context))
                except Exception as exc:
                    raise self._stage_error(exc, i, f"window {i + 1} of {count}") from exc
            return fragments

        def run_window(i: int) -> SummaryFragment:
            context = tail_text(windows[i - 1], carried_chars) if i > 0 else None
            return summarize_window(i, context)

        results, errors = fan_out(
            run_window, list(range(count)), self.fanout, thread_name_prefix=f"map-{stream_id}"
        )
        if errors:
            position = min(errors)
            raise self._stage_error(
                errors[position], position, f"window {position + 1} of {count}"
            ) from errors[position]
        return ordered(results)

    def _reduce_round(
        self,
        stream_id: str,
        fragments: List[SummaryFragment],
        round_number: int,
        params: Dict[str, Any],
        deadline: Optional[Deadline],
        trace: SummarizationTrace,
    ) -> List[SummaryFragment]:
        batches = self.plan_batches(fragments)
        if len(batches) >= len(fragments):
            raise CapacityError(
                f"Reduce round {round_number} made no progress ({len(fragments)} fragments "
                f"do not fit {self.budget.batch_tokens}-token batches)",
                provider="MapReduce",
                suggestion="Lower summary_output_tokens or raise reduce_batch_tokens",
            )

        def reduce_batch(position: int) -> SummaryFragment:
            members = [fragments[i] for i in batches[position]]
            source_range = (members[0].source_range[0], members[-1].source_range[1])
            if len(members) == 1:
                text = members[0].text
            else:
                text = self._call(
                    join_fragments([m.text for m in members]),
                    render_prompt(self.reduce_prompt, batch_size=len(members), **params),
                    None,
                    f"[{stream_id}] Reduce round {round_number} batch {position + 1}"
                    f"/{len(batches)}",
                    deadline,
                    trace,
                )
            return SummaryFragment(
                index=position, text=text, source_range=source_range, round=round_number
            )

        results, errors = fan_out(
            reduce_batch,
            list(range(len(batches))),
            self.fanout,
            thread_name_prefix=f"reduce-{stream_id}",
        )
        if errors:
            position = min(errors)
            raise self._stage_error(
                errors[position],
                position,
                f"reduce round {round_number} batch {position + 1} of {len(batches)}",
            ) from errors[position]
        return ordered(results)

    @staticmethod
    def _stage_error(exc: BaseException, index: int, detail: str) -> StageError:
        if isinstance(exc, StageError):
            return exc
        return StageError(
            StreamStatus.SUMMARIZING, exc, failed_index=index, detail=f"{detail}: {exc}"
        )

    def summarize(
        self,
        stream_id: str,
        transcript: str,
        params: Optional[Dict[str, Any]] = None,
        deadline: Optional[Deadline] = None,
        on_round: Optional[Callable[[int, int], None]] = None,
    ) -> SummaryResult:
        """Summarize a full transcript.

        Args:
            stream_id: Used for logging and worker names
            transcript: Ordered transcript text
            params: Prompt parameters (title, chamber, recorded_on)
            deadline: Run deadline checked before every call
            on_round: Called with (round number, fragment count) after the map
                phase (round 0) and each reduce round

        Raises:
            StageError: Wrapping the failing call, or a CapacityError when the
                content cannot be reduced within budget
        """
        params = dict(params or {})
        params.setdefault("title", "")
        params.setdefault("chamber", "parliamentary")
        params.setdefault("recorded_on", "")
        trace = SummarizationTrace()

        if not transcript.strip():
            raise StageError(
                StreamStatus.SUMMARIZING,
                CapacityError("Transcript is empty", provider="MapReduce"),
                detail="transcript is empty",
            )

        try:
            windows = self.plan_windows(transcript)
        except CapacityError as exc:
            raise StageError(StreamStatus.SUMMARIZING, exc) from exc
        trace.window_count = len(windows)
        logger.info("[%s] Map phase: %d windows", stream_id, len(windows))

        fragments = self._map(stream_id, windows, params, deadline, trace)
        trace.round_fragment_counts.append(len(fragments))
        if on_round:
            on_round(0, len(fragments))

        round_number = 0
        synthesis_tokens = self.budget.synthesis_tokens
        while self.budget.estimate(join_fragments([f.text for f in fragments])) > synthesis_tokens:
            round_number += 1
            if round_number > self.max_reduce_rounds:
                raise StageError(
                    StreamStatus.SUMMARIZING,
                    CapacityError(
                        f"Fragments still exceed {synthesis_tokens} tokens after "
                        f"{self.max_reduce_rounds} reduce rounds",
                        provider="MapReduce",
                    ),
                )
            try:
                reduced = self._reduce_round(
                    stream_id, fragments, round_number, params, deadline, trace
                )
            except CapacityError as exc:
                raise StageError(StreamStatus.SUMMARIZING, exc) from exc
            logger.info(
                "[%s] Reduce round %d: %d -> %d fragments",
                stream_id,
                round_number,
                len(fragments),
                len(reduced),
            )
            fragments = reduced
            trace.round_fragment_counts.append(len(fragments))
            if on_round:
                on_round(round_number, len(fragments))

        try:
            text = self._call(
                join_fragments([f.text for f in fragments]),
                render_prompt(self.synthesis_prompt, **params),
                None,
                f"[{stream_id}] Synthesize final summary",
                deadline,
                trace,
            )
        except Exception as exc:
            raise self._stage_error(exc, len(fragments), "final synthesis") from exc

        logger.info(
            "[%s] Summary ready: %d windows, %d reduce rounds, %d calls",
            stream_id,
            trace.window_count,
            trace.reduce_rounds,
            trace.calls,
        )
        return SummaryResult(
            text=text,
            model_version=self.provider.model,
            trace=trace,
            prompts=self.prompt_hashes(reduced=trace.reduce_rounds > 0),
        )
