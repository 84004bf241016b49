"""
Dictation session state machine.

    IDLE -> RECORDING -> TRANSCRIBING -> [CORRECTING] -> IDLE

Only one session exists at a time. Entering RECORDING is a check-and-set
under a lock, and triggers that arrive while a session is being transcribed
or corrected are ignored. Once recording stops, the samples go through a
LangGraph pipeline (transcribe -> correct -> commit) on a worker thread. A
result is only committed if its session is still the current one.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, TypedDict

import numpy as np
from langgraph.graph import END, StateGraph

from voxflow.audio import AudioCapture
from voxflow.config import ERROR_DISPLAY_SECONDS, SAMPLE_RATE, Settings
from voxflow.correction import CorrectionClient
from voxflow.errors import ModelUnavailable
from voxflow.models import ModelManager

logger = logging.getLogger(__name__)


class SessionState(Enum):
    IDLE = "idle"
    RECORDING = "recording"
    TRANSCRIBING = "transcribing"
    CORRECTING = "correcting"


@dataclass(eq=False)
class Session:
    """One trigger-to-commit cycle and the text target captured when it began."""

    id: int
    target: Any
    started_at: float = field(default_factory=time.monotonic)


class PipelineState(TypedDict):
    session: Session
    samples: np.ndarray
    raw_text: str
    final_text: str
    error: str | None
    committed: bool


class _NullStatus:
    def show(self, state: SessionState) -> None:
        pass

    def error(self, message: str) -> None:
        pass

    def dismiss(self) -> None:
        pass


def run_in_thread(fn: Callable[[], None]) -> None:
    threading.Thread(target=fn, daemon=True).start()


class Orchestrator:
    """
    Drives capture, transcription, correction and commit for each session.

    Args:
        settings: Configuration snapshot
        capture: Microphone capture
        models: Whisper model owner
        corrector: LLM correction client (None disables correction)
        target_provider: Returns the text sink for a new session; anything
            with insert_text(text)
        status: Receives show(state) / error(message) / dismiss()
        progress: Download progress sink used when the model must be fetched
        background: Runs a callable off the calling thread
        error_display_seconds: How long a model error stays visible
    """

    def __init__(
        self,
        settings: Settings,
        capture: AudioCapture,
        models: ModelManager,
        corrector: CorrectionClient | None,
        target_provider: Callable[[], Any],
        status=None,
        progress: Callable[[float], None] | None = None,
        background: Callable[[Callable[[], None]], None] = run_in_thread,
        error_display_seconds: float = ERROR_DISPLAY_SECONDS,
    ) -> None:
        self.settings = settings
        self.capture = capture
        self.models = models
        self.corrector = corrector
        self.target_provider = target_provider
        self.status = status or _NullStatus()
        self.progress = progress
        self.error_display_seconds = error_display_seconds
        self._background = background

        self._lock = threading.Lock()
        self._state = SessionState.IDLE
        self._session: Session | None = None
        self._ids = itertools.count(1)
        self._graph = self._build_graph()

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def session(self) -> Session | None:
        return self._session

    @property
    def correction_enabled(self) -> bool:
        return (
            self.settings.is_llm_correction_enabled
            and self.corrector is not None
            and self.corrector.is_configured
        )

    def _transition(self, new_state: SessionState, session: Session | None, reason: str = "") -> None:
        """Caller holds the lock."""
        old = self._state
        self._state = new_state
        label = f"session {session.id}" if session else "no session"
        suffix = f" ({reason})" if reason else ""
        logger.info(f"[{label}] {old.value} -> {new_state.value}{suffix}")

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    def toggle(self) -> None:
        """Hotkey entry point: start when idle, stop when recording, else ignore."""
        with self._lock:
            if self._state is SessionState.IDLE:
                self._start_locked()
                return
            if self._state is not SessionState.RECORDING:
                logger.info(f"Trigger ignored while {self._state.value}")
                return
            session, samples = self._stop_locked("manual stop")
        self._after_stop(session, samples)

    def start(self) -> bool:
        with self._lock:
            if self._state is not SessionState.IDLE:
                return False
            self._start_locked()
            return True

    def stop(self) -> bool:
        with self._lock:
            if self._state is not SessionState.RECORDING:
                return False
            session, samples = self._stop_locked("manual stop")
        self._after_stop(session, samples)
        return True

    def cancel(self) -> None:
        """Abandon the current session; any in-flight result is discarded."""
        with self._lock:
            session = self._session
            if session is None:
                return
            if self._state is SessionState.RECORDING:
                self.capture.stop()
            self._session = None
            self._transition(SessionState.IDLE, session, "cancelled")
        self.status.dismiss()

    def _start_locked(self) -> None:
        session = Session(id=next(self._ids), target=self.target_provider())
        self._session = session
        self._transition(SessionState.RECORDING, session, "trigger")
        self.status.show(SessionState.RECORDING)
        self.capture.start(lambda: self._background(lambda: self._on_silence(session.id)))

    def _stop_locked(self, reason: str) -> tuple[Session, np.ndarray]:
        session = self._session
        samples = self.capture.stop()
        logger.info(
            f"[session {session.id}] Recording stopped ({reason}), {len(samples)} samples "
            f"({len(samples) / SAMPLE_RATE:.1f}s)"
        )
        if len(samples) == 0:
            self._session = None
            self._transition(SessionState.IDLE, session, "no audio")
        else:
            self._transition(SessionState.TRANSCRIBING, session, reason)
        return session, samples

    def _on_silence(self, session_id: int) -> None:
        with self._lock:
            session = self._session
            if (
                self._state is not SessionState.RECORDING
                or session is None
                or session.id != session_id
            ):
                logger.debug(f"Stale silence signal for session {session_id} ignored")
                return
            session, samples = self._stop_locked("silence detected")
        self._after_stop(session, samples)

    def _after_stop(self, session: Session, samples: np.ndarray) -> None:
        if len(samples) == 0:
            self.status.dismiss()
            return
        self.status.show(SessionState.TRANSCRIBING)
        self._background(lambda: self._process(session, samples))

    def _finish(self, session: Session, reason: str) -> None:
        with self._lock:
            if self._session is not session:
                logger.info(f"[session {session.id}] Finished after being superseded ({reason})")
                return
            self._session = None
            self._transition(SessionState.IDLE, session, reason)
        self.status.dismiss()

    def _is_current(self, session: Session, new_state: SessionState | None = None) -> bool:
        with self._lock:
            if self._session is not session:
                return False
            if new_state is not None:
                self._transition(new_state, session)
            return True

    # ------------------------------------------------------------------
    # Processing pipeline
    # ------------------------------------------------------------------

    def _build_graph(self):
        workflow = StateGraph(PipelineState)

        workflow.add_node("transcribe", self._node_transcribe)
        workflow.add_node("correct", self._node_correct)
        workflow.add_node("commit", self._node_commit)
        workflow.add_node("fail", self._node_fail)

        workflow.set_entry_point("transcribe")
        workflow.add_conditional_edges(
            "transcribe",
            self._route_after_transcribe,
            {"fail": "fail", "correct": "correct", "commit": "commit", "empty": END},
        )
        workflow.add_edge("correct", "commit")
        workflow.add_edge("commit", END)
        workflow.add_edge("fail", END)

        return workflow.compile()

    async def _node_transcribe(self, state: PipelineState) -> dict:
        """Node 1: make sure the model is ready, then transcribe"""
        session = state["session"]
        try:
            await asyncio.to_thread(self.models.ensure_ready, self.progress)
        except ModelUnavailable as e:
            return {"error": str(e)}

        t0 = time.perf_counter()
        text = await asyncio.to_thread(self.models.transcribe, state["samples"])
        t1 = time.perf_counter()
        logger.info(f"[session {session.id}] Transcription ({(t1 - t0) * 1000:.0f}ms): {text[:100]!r}")
        return {"raw_text": text, "final_text": text}

    def _route_after_transcribe(self, state: PipelineState) -> str:
        if state.get("error"):
            return "fail"
        if not state.get("raw_text"):
            logger.info(f"[session {state['session'].id}] Empty transcription, nothing to commit")
            return "empty"
        if self.correction_enabled:
            return "correct"
        return "commit"

    async def _node_correct(self, state: PipelineState) -> dict:
        """Node 2: LLM correction"""
        session = state["session"]
        if not self._is_current(session, SessionState.CORRECTING):
            return {"final_text": state["raw_text"]}

        self.status.show(SessionState.CORRECTING)
        corrected = await self.corrector.correct(state["raw_text"])
        logger.info(f"[session {session.id}] Corrected: {corrected[:100]!r}")
        return {"final_text": corrected}

    async def _node_commit(self, state: PipelineState) -> dict:
        """Node 3: commit to the target captured when the session began"""
        session = state["session"]
        text = state["final_text"]

        with self._lock:
            if self._session is not session:
                logger.warning(f"[session {session.id}] Result discarded, session was superseded")
                return {"committed": False}
            try:
                session.target.insert_text(text)
            except Exception as e:
                logger.error(f"[session {session.id}] Commit failed: {e}")
                return {"committed": False}

        logger.info(f"[session {session.id}] Committed {len(text)} chars")
        return {"committed": True}

    async def _node_fail(self, state: PipelineState) -> dict:
        session = state["session"]
        logger.error(f"[session {session.id}] Model unavailable: {state['error']}")
        if self._is_current(session):
            self.status.error(f"Speech model unavailable: {state['error']}")
            await asyncio.sleep(self.error_display_seconds)
        return {"committed": False}

    def _process(self, session: Session, samples: np.ndarray) -> None:
        initial_state: PipelineState = {
            "session": session,
            "samples": samples,
            "raw_text": "",
            "final_text": "",
            "error": None,
            "committed": False,
        }
        reason = "done"
        try:
            final_state = asyncio.run(self._graph.ainvoke(initial_state))
            if not final_state.get("committed"):
                reason = "nothing committed"
        except Exception as e:
            logger.error(f"[session {session.id}] Processing error: {e}", exc_info=True)
            reason = "error"
        finally:
            self._finish(session, reason)

    # ------------------------------------------------------------------
    # Model preload
    # ------------------------------------------------------------------

    def warm_up(self) -> None:
        """Download and load the model in the background."""
        def run() -> None:
            try:
                self.models.ensure_ready(self.progress)
            except ModelUnavailable as e:
                logger.warning(f"Model preload failed: {e}")
                self.status.error(f"Speech model unavailable: {e}")

        self._background(run)
