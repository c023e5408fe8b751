import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from blindtest.config import DEADLINE_GRACE_MS
from blindtest.models.room import (
    AcceptedAnswer,
    Phase,
    Player,
    RoundReveal,
    RoundStart,
    Settings,
    Track,
)
from blindtest.services.matcher import is_correct_answer
from blindtest.services.scoring import compute_points

logger = logging.getLogger(__name__)

IGNORED = "ignored"
REJECTED = "rejected"
ACCEPTED = "accepted"


@dataclass
class AnswerOutcome:
    status: str
    reason: Optional[str] = None
    points: int = 0
    elapsed_ms: int = 0
    correct: bool = False

    @property
    def accepted(self) -> bool:
        return self.status == ACCEPTED

    @property
    def recordable(self) -> bool:
        """Whether the submission belongs in the answer history (right or wrong)."""
        return self.status == ACCEPTED or self.reason == "incorrect"


def _call_later(delay: float, callback: Callable[[], Any]) -> asyncio.TimerHandle:
    return asyncio.get_running_loop().call_later(delay, callback)


class RoundStateMachine:
    """Current round of the room: IDLE -> PLAYING -> REVEAL, back to IDLE on skip.

    The answer deadline is a cancellable timer handle kept next to the round.
    Every transition out of PLAYING cancels it, and ``expire`` re-checks the
    phase and round number, so a timer that fires late is harmless.
    """

    def __init__(self, scheduler: Callable[[float, Callable[[], Any]], Any] = None, grace_ms: int = DEADLINE_GRACE_MS):
        self.phase = Phase.IDLE
        self.track: Optional[Track] = None
        self.started_at: Optional[int] = None
        self.answers: List[AcceptedAnswer] = []
        self.is_test = False
        self.settings: Optional[Settings] = None
        self.round_number = 0
        self._deadline = None
        self._scheduler = scheduler or _call_later
        self._grace_ms = grace_ms
        self._last_submission: Dict[str, int] = {} # sid -> epoch ms, survives across rounds

    @property
    def deadline_armed(self) -> bool:
        return self._deadline is not None

    def start(
        self,
        track: Track,
        settings: Settings,
        now: int,
        is_test: bool = False,
        on_deadline: Callable[[int], Any] = None,
    ) -> Optional[RoundStart]:
        if self.phase == Phase.PLAYING:
            logger.debug("start ignored: a round is already playing")
            return None

        self._cancel_deadline()
        self.track = track
        self.settings = settings
        self.phase = Phase.PLAYING
        self.started_at = now
        self.answers = []
        self.is_test = is_test
        self.round_number += 1

        if on_deadline is not None:
            number = self.round_number
            delay = (settings.answer_window_ms + self._grace_ms) / 1000
            self._deadline = self._scheduler(delay, lambda: on_deadline(number))

        logger.info(
            f"Round {self.round_number} started: {track.artist} - {track.title}"
            f"{' (test)' if is_test else ''}"
        )
        return self.start_payload()

    def reveal(self) -> Optional[RoundReveal]:
        if self.phase != Phase.PLAYING:
            return None
        self._cancel_deadline()
        self.phase = Phase.REVEAL
        logger.info(f"Round {self.round_number} revealed with {len(self.answers)} correct answer(s)")
        return self.reveal_payload()

    def expire(self, round_number: int) -> Optional[RoundReveal]:
        """Deadline callback target; only acts on the round that armed it."""
        if self.phase != Phase.PLAYING or round_number != self.round_number:
            logger.debug(f"Stale deadline for round {round_number} ignored")
            return None
        self._deadline = None
        return self.reveal()

    def skip(self) -> Phase:
        """Drop the current round without revealing it; returns the phase it left."""
        previous = self.phase
        self._cancel_deadline()
        self.phase = Phase.IDLE
        self.track = None
        self.started_at = None
        self.answers = []
        self.is_test = False
        if previous != Phase.IDLE:
            logger.info(f"Round {self.round_number} skipped")
        return previous

    def submit_answer(self, player: Optional[Player], sid: str, text: str, now: int) -> AnswerOutcome:
        if self.phase != Phase.PLAYING or self.track is None:
            return AnswerOutcome(IGNORED, "phase")
        if player is None or player.banned:
            return AnswerOutcome(IGNORED, "player")

        last = self._last_submission.get(sid)
        if last is not None and now - last < self.settings.answer_cooldown_ms:
            return AnswerOutcome(REJECTED, "cooldown")
        self._last_submission[sid] = now

        elapsed = int(now - self.started_at)
        if not is_correct_answer(text, self.track):
            return AnswerOutcome(REJECTED, "incorrect", elapsed_ms=elapsed)

        if any(a.name == player.name for a in self.answers):
            return AnswerOutcome(REJECTED, "duplicate", elapsed_ms=elapsed, correct=True)

        points = compute_points(elapsed, self.settings.answer_window_ms, self.settings.base_points, self.is_test)
        self.answers.append(AcceptedAnswer(sid=sid, name=player.name, points=points, elapsed_ms=elapsed))
        if not self.is_test:
            player.score += points
        return AnswerOutcome(ACCEPTED, points=points, elapsed_ms=elapsed, correct=True)

    def forget_connection(self, sid: str) -> None:
        self._last_submission.pop(sid, None)

    def reset_counter(self) -> None:
        self.round_number = 0

    def start_payload(self) -> RoundStart:
        return RoundStart(
            preview=self.track.preview,
            cover=self.track.artwork,
            extract_duration_ms=self.settings.extract_duration_ms,
            answer_window_ms=self.settings.answer_window_ms,
            started_at=self.started_at,
            is_test_round=self.is_test,
            round_number=self.round_number,
        )

    def reveal_payload(self) -> RoundReveal:
        return RoundReveal(
            title=self.track.title,
            artist=self.track.artist,
            cover=self.track.large_artwork,
            answers=list(self.answers),
            is_test_round=self.is_test,
        )

    def replay(self) -> Optional[Tuple[str, Any]]:
        """Event that brings a late joiner up to date with the current phase."""
        if self.phase == Phase.PLAYING and self.track:
            return "round:start", self.start_payload()
        if self.phase == Phase.REVEAL and self.track:
            return "round:reveal", self.reveal_payload()
        return None

    def _cancel_deadline(self) -> None:
        if self._deadline is not None:
            self._deadline.cancel()
            self._deadline = None
