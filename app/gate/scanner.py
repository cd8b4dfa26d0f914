"""Door scan session.

Feeds camera decodes and manual entries into the verifier one at a time.
After each processed scan the session enters a cool-down; payloads that
arrive during it are dropped, not queued. Camera scans pause the input
source for the duration and resume it when the cool-down ends. Manual
entry leaves the source running but shares the cool-down and the single
verification path.

TransientFailure verdicts use a separate (by default zero) cool-down so
the door can re-scan immediately.

close() releases the input source from any state, including mid
cool-down, and is idempotent.
"""

import asyncio
import inspect
import logging
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Optional, TextIO

from .api_models import ErrorKind, VerificationVerdict
from .events import EventBus, ScanCompleted
from .verify import TicketVerifier

log = logging.getLogger(__name__)


class InputSource(ABC):
    """A continuous source of decoded payloads (camera, reader).

    The source delivers payloads by calling ScanSession.handle_scan.
    """

    @abstractmethod
    async def start(self) -> None:
        """Begin or resume delivering payloads."""

    @abstractmethod
    async def stop(self) -> None:
        """Pause delivery; start() may be called again."""

    @abstractmethod
    async def close(self) -> None:
        """Release the underlying device. Must be safe to call twice."""


class ManualOnlySource(InputSource):
    """Placeholder source for doors without a camera."""

    async def start(self) -> None:
        pass

    async def stop(self) -> None:
        pass

    async def close(self) -> None:
        pass


class LineSource(InputSource):
    """Reads one payload per line from a text stream (stdin door scanner).

    While stopped no further lines are read, so lines arriving during a
    cool-down wait in the stream instead of being dropped.
    """

    def __init__(self, stream: TextIO):
        self._stream = stream
        self._running = asyncio.Event()
        self._closed = False

    async def start(self) -> None:
        self._running.set()

    async def stop(self) -> None:
        self._running.clear()

    async def close(self) -> None:
        self._closed = True
        self._running.set()

    async def feed(self, session: "ScanSession") -> int:
        """Deliver lines to session until EOF or close.

        Returns:
            Number of non-blank lines delivered.
        """
        delivered = 0
        while not self._closed:
            await self._running.wait()
            if self._closed:
                break
            line = await asyncio.to_thread(self._stream.readline)
            if not line:
                break
            raw = line.strip()
            if raw:
                delivered += 1
                await session.handle_scan(raw)
        return delivered


@dataclass
class ScanStats:
    """Running counters for one session."""
    total_scanned: int = 0
    valid: int = 0
    invalid: int = 0
    duplicate_attempts: int = 0
    recent: Deque[VerificationVerdict] = field(default_factory=lambda: deque(maxlen=10))

    def record(self, verdict: VerificationVerdict) -> None:
        self.total_scanned += 1
        if verdict.is_valid:
            self.valid += 1
        else:
            self.invalid += 1
            if verdict.error_kind == ErrorKind.ALREADY_REDEEMED:
                self.duplicate_attempts += 1
        self.recent.appendleft(verdict)

    def as_dict(self) -> dict:
        return {
            "total_scanned": self.total_scanned,
            "valid": self.valid,
            "invalid": self.invalid,
            "duplicate_attempts": self.duplicate_attempts,
        }


class ScanSession:
    """Interactive scan loop controller for one door.

    Args:
        verifier: The verification pathway for every scan.
        source: Camera or other input source; ManualOnlySource if None.
        cooldown: Seconds to ignore input after a processed scan.
        transient_cooldown: Cool-down after a TransientFailure verdict.
        recent_limit: Number of verdicts kept in stats.recent.
        on_verdict: Display callback, sync or async.
        bus: Event bus for ScanCompleted; defaults to the verifier's bus.
    """

    def __init__(
        self,
        verifier: TicketVerifier,
        source: Optional[InputSource] = None,
        *,
        cooldown: float = 3.0,
        transient_cooldown: float = 0.0,
        recent_limit: int = 10,
        on_verdict: Optional[Callable[[VerificationVerdict], Any]] = None,
        bus: Optional[EventBus] = None,
    ):
        self._verifier = verifier
        self._source = source or ManualOnlySource()
        self._cooldown = cooldown
        self._transient_cooldown = transient_cooldown
        self._on_verdict = on_verdict
        self._bus = bus or verifier.bus
        self.stats = ScanStats(recent=deque(maxlen=recent_limit))

        self._cooling_down = False
        self._source_running = False
        self._closed = False
        self._resume_task: Optional[asyncio.Task] = None

    @property
    def cooling_down(self) -> bool:
        return self._cooling_down

    @property
    def closed(self) -> bool:
        return self._closed

    async def __aenter__(self) -> "ScanSession":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def start(self) -> None:
        if self._closed:
            raise RuntimeError("scan session is closed")
        await self._source.start()
        self._source_running = True

    async def handle_scan(self, raw: str) -> Optional[VerificationVerdict]:
        """Process a payload decoded by the input source.

        Returns:
            The verdict, or None if dropped by the cool-down or a closed session.
        """
        return await self._process(raw, origin="camera", suspend_source=True)

    async def submit_manual(self, raw: str) -> Optional[VerificationVerdict]:
        """Process manually entered text. Blank input is ignored."""
        if not raw or not raw.strip():
            return None
        return await self._process(raw.strip(), origin="manual", suspend_source=False)

    async def _process(
        self, raw: str, origin: str, suspend_source: bool
    ) -> Optional[VerificationVerdict]:
        if self._closed or self._cooling_down:
            log.debug(f"Dropped {origin} scan during cool-down")
            return None

        # Set before the first await so a concurrent delivery is dropped
        self._cooling_down = True
        paused = False
        if suspend_source and self._source_running:
            try:
                await self._source.stop()
            except Exception:
                log.exception("Could not pause input source; scanning continues")
            else:
                self._source_running = False
                paused = True

        verdict = await self._verifier.verify(raw)

        if self._closed:
            return verdict

        self.stats.record(verdict)
        await self._display(verdict)
        await self._bus.publish(ScanCompleted(verdict=verdict, origin=origin))

        delay = (
            self._transient_cooldown
            if verdict.error_kind == ErrorKind.TRANSIENT_FAILURE
            else self._cooldown
        )
        if delay <= 0:
            await self._resume(paused)
        else:
            self._resume_task = asyncio.create_task(self._resume_after(delay, paused))
        return verdict

    async def _display(self, verdict: VerificationVerdict) -> None:
        if self._on_verdict is None:
            return
        try:
            result = self._on_verdict(verdict)
            if inspect.isawaitable(result):
                await result
        except Exception:
            log.exception("Verdict display callback failed")

    async def _resume_after(self, delay: float, restart_source: bool) -> None:
        await asyncio.sleep(delay)
        await self._resume(restart_source)

    async def _resume(self, restart_source: bool) -> None:
        if self._closed:
            return
        self._cooling_down = False
        self._resume_task = None
        if restart_source and not self._source_running:
            try:
                await self._source.start()
            except Exception:
                log.exception("Could not restart input source after cool-down")
                return
            self._source_running = True
            log.debug("Cool-down over, scanner resumed")

    async def close(self) -> None:
        """Tear the session down and release the input source."""
        if self._closed:
            return
        self._closed = True
        task, self._resume_task = self._resume_task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._source_running = False
        await self._source.close()
