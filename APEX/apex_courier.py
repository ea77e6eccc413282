# APEX/apex_courier.py
import logging
import threading
import time
from enum import Enum
from typing import Optional, Set

from logger import get_logger, log_json
from .apex_events import (
    ApexEvent,
    ConnectionFailureEvent,
    CourierEvent,
    CreditActions,
    CreditEvent,
    Direction,
    EscrowedEvent,
    Events,
    SerialDataEvent,
)
from .apex_listeners import Listener, ListenerRegistry
from .apex_packet import ApexCodec, bytes_to_text, format_serial_number
from .apex_port import ApexPort, PortFaultError, PortTimeoutError

logger = get_logger(__name__)


class CourierState(Enum):
    NOT_STARTED = "not_started"
    RUNNING     = "running"
    STOPPING    = "stopping"
    STOPPED     = "stopped"


class _Request(Enum):
    IDENTITY = "identity"
    RESET    = "reset"


class Courier:
    """
    Runs the Apex poll loop on its own thread.

    Design notes:
    - Every tick sends exactly one command and fully handles its reply before
      the next one goes out; the credit action parsed from reply N is carried
      in command N+1.
    - Callers only ever touch thread-safe control state (pause, stop, one-shot
      requests, listeners). The serial port belongs to the loop thread.
    - Timeouts and link faults are counted, never raised. Once
      `retry_limit` consecutive ticks have failed, a ConnectionFailureEvent
      goes out on *every* further failed tick until the link recovers.
    """

    RESET_SETTLE_S = 0.5  # Acceptor needs ~500 ms after a soft reset before the port is usable

    # Serial number reply: 5 bytes starting at D0 (offset 3)
    SERIAL_NUMBER_OFFSET = 3
    SERIAL_NUMBER_LENGTH = 5

    def __init__(self,
                 port: ApexPort,
                 codec: Optional[ApexCodec] = None,
                 *,
                 poll_interval_ms: int = 100,
                 retry_limit: int = 5,
                 timeout: Optional[float] = None,
                 mask_serial_number: bool = False):
        """
        Parameters
        ----------
        port : ApexPort
            Transport. Opened lazily by the loop and closed when it stops.
        codec : ApexCodec | None
            Frame builder/parser; a default US-dollar codec if omitted.
        poll_interval_ms : int
            Delay between ticks, also the pause re-check period.
        retry_limit : int
            Consecutive failed ticks before ConnectionFailureEvent is raised.
        timeout : float | None
            Read timeout per reply in seconds; None uses the port's own.
        mask_serial_number : bool
            Render the last serial number byte unsigned (see format_serial_number).
        """
        self.port = port
        self.codec = codec or ApexCodec()
        self.poll_interval = max(0.001, poll_interval_ms / 1000.0)
        self.retry_limit = retry_limit
        self.timeout = timeout
        self.mask_serial_number = mask_serial_number

        self._listeners = ListenerRegistry()

        # --- Control state (written by callers, consumed by the loop) ---
        self._paused = threading.Event()
        self._stop_flag = threading.Event()
        self._requests_lock = threading.Lock()
        self._pending: Set[_Request] = set()

        self._state = CourierState.NOT_STARTED
        self._state_cond = threading.Condition()
        self._thread: Optional[threading.Thread] = None

        # --- Loop-owned state ---
        self._link_ok = True
        self._failure_count = 0
        self.credit_action = CreditActions.NONE
        self._raw_model: Optional[int] = None
        self._raw_firmware: Optional[int] = None
        self._serial_number: Optional[str] = None

    # ---------- Lifecycle ----------
    @property
    def state(self) -> CourierState:
        return self._state

    def start(self) -> None:
        """Spawn the poll thread. No-op while a loop is already alive."""
        with self._state_cond:
            if self._thread and self._thread.is_alive():
                return
            self._stop_flag.clear()
            self._state = CourierState.NOT_STARTED
            self._thread = threading.Thread(target=self._run, name="apex-courier", daemon=True)
            self._thread.start()

    def request_stop(self, timeout: Optional[float] = None) -> bool:
        """
        Ask the loop to stop and block until it has actually reached STOPPED.

        Takes effect within one poll interval plus one transport timeout, or
        after the settle delay when a reset is in progress.

        Returns False only if `timeout` expired first, or when called from the
        loop thread itself (e.g. inside a listener), where waiting would deadlock.
        """
        self._stop_flag.set()
        logger.debug("Stopping courier thread...")

        if self._thread is None:
            with self._state_cond:
                self._state = CourierState.STOPPED
            return True
        if threading.current_thread() is self._thread:
            logger.warning("request_stop() called from the courier thread; not waiting")
            return False

        with self._state_cond:
            if self._state is CourierState.RUNNING:
                self._state = CourierState.STOPPING
            stopped = self._state_cond.wait_for(lambda: self._state is CourierState.STOPPED, timeout)
        if stopped:
            self._thread.join()
            logger.debug("Courier thread stopped")
        return stopped

    def set_paused(self, pause: bool) -> None:
        """
        Suspend or resume polling without closing the port. The acceptor
        disables itself if the host stays quiet for more than ~8 seconds.
        """
        if pause:
            self._paused.set()
        else:
            self._paused.clear()

    @property
    def paused(self) -> bool:
        return self._paused.is_set()

    # ---------- One-shot requests ----------
    def request_reset(self) -> None:
        """Soft-reset the acceptor on the next tick."""
        with self._requests_lock:
            self._pending.add(_Request.RESET)

    def request_identity_query(self) -> None:
        """Query the serial number on the next tick (takes priority over a reset)."""
        with self._requests_lock:
            self._pending.add(_Request.IDENTITY)

    def _take_request(self) -> Optional[_Request]:
        with self._requests_lock:
            for req in (_Request.IDENTITY, _Request.RESET):
                if req in self._pending:
                    self._pending.discard(req)
                    return req
        return None

    # ---------- Listeners ----------
    def subscribe(self, listener: Listener) -> None:
        self._listeners.subscribe(listener)

    def unsubscribe(self, listener: Listener) -> None:
        self._listeners.unsubscribe(listener)

    def unsubscribe_all(self) -> None:
        self._listeners.unsubscribe_all()

    def _fire(self, event: CourierEvent) -> None:
        self._listeners.dispatch(event)

    # ---------- Accessors ----------
    def is_link_healthy(self) -> bool:
        """
        False after a tick that timed out or hit a link fault. Apex acceptors
        often go quiet for a poll or two while validating a bill, so consider
        debouncing this rather than reacting to a single False.
        """
        return self._link_ok

    @property
    def consecutive_failures(self) -> int:
        return self._failure_count

    def get_firmware_revision(self) -> str:
        if self._raw_firmware is None:
            return "N/A"
        return f"1.{self._raw_firmware:02x}"

    def get_model(self) -> str:
        if self._raw_model is None:
            return "N/A"
        return f"{self._raw_model:02X}"

    def get_serial_number(self) -> Optional[str]:
        return self._serial_number

    # ---------- Loop ----------
    def _set_state(self, state: CourierState) -> None:
        with self._state_cond:
            self._state = state
            self._state_cond.notify_all()

    def _run(self) -> None:
        self._set_state(CourierState.RUNNING)
        logger.info("Courier started on %s (poll %d ms)", self.port.port, int(self.poll_interval * 1000))
        try:
            while not self._stop_flag.is_set():
                # Burn time in poll-interval steps while paused; a stop still gets through.
                while self._paused.is_set() and not self._stop_flag.is_set():
                    self._stop_flag.wait(self.poll_interval)
                if self._stop_flag.is_set():
                    break

                self.poll_once()
                self._stop_flag.wait(self.poll_interval)
        finally:
            self.port.close()
            logger.info("Courier stopped")
            self._set_state(CourierState.STOPPED)

    def poll_once(self) -> None:
        """
        Run a single tick: one exchange plus link-health accounting.

        A pending reset / identity request is taken before the port is
        touched, so a link that keeps failing to open cannot replay it forever.
        Any error other than a timeout or link fault is logged and counted as
        a failed tick; the loop keeps running.
        """
        ok = True
        request = self._take_request()
        try:
            if not self.port.is_open:
                self.port.open()

            if request is _Request.IDENTITY:
                self._handle_serial_number_request()
            elif request is _Request.RESET:
                self._handle_reset_request()
            else:
                self._handle_normal_loop()

        except PortTimeoutError as exc:
            logger.error("Acceptor did not respond: %s", exc)
            ok = False
        except PortFaultError as exc:
            logger.error("Serial link fault: %s", exc)
            ok = False
            # Reopened on the next tick; this is how an unplugged cable recovers.
            self.port.close()
        except Exception:
            # Keep the loop alive on unexpected errors; only stop ends it.
            logger.exception("Unexpected error in courier tick")
            ok = False

        self._account(ok)

    def _account(self, ok: bool) -> None:
        self._link_ok = ok
        if ok:
            self._failure_count = 0
            return

        self._failure_count += 1
        if self._failure_count >= self.retry_limit:
            log_json(logger, logging.WARNING, {"event": "connection_failure", "count": self._failure_count})
            self._fire(ConnectionFailureEvent(self._failure_count))

    def _write_wrapper(self, command: bytes, expect_reply: bool = True) -> bytes:
        """
        Send one command, notify listeners of the raw traffic and return the reply.

        An invalid reply flushes the receive buffer and comes back as b"".
        Raises PortTimeoutError / PortFaultError from the transport.
        """
        self._fire(SerialDataEvent(Direction.TX, bytes_to_text(command)))
        self.port.write(command)
        if not expect_reply:
            return b""

        resp = self.port.read_exact_or_timeout(self.codec.MAX_RESPONSE_SIZE, self.timeout)
        self._fire(SerialDataEvent(Direction.RX, bytes_to_text(resp)))

        if not self.codec.is_valid_frame(resp):
            self.port.flush()
            logger.debug("Invalid data received, flushed port and ignoring data: %s", bytes_to_text(resp))
            return b""
        return resp

    def _handle_normal_loop(self) -> None:
        resp = self._write_wrapper(self.codec.build_normal_command(self.credit_action))
        if not resp:
            return

        packet = self.codec.parse_response(resp)
        self.credit_action = packet.credit_action
        self._raw_model = packet.model
        self._raw_firmware = packet.firmware_revision

        for kind in packet.events:
            if kind is Events.CREDIT:
                event = CreditEvent(packet.bill_name or "Unknown", packet.raw)
            elif kind is Events.ESCROWED:
                event = EscrowedEvent(packet.bill_name or "Unknown", packet.raw)
            else:
                event = ApexEvent(kind, packet.raw)
            self._fire(event)

    def _handle_reset_request(self) -> None:
        """
        Write the reset, close, settle for RESET_SETTLE_S, reopen.

        The settle is a plain sleep: a stop requested during a reset is seen
        only after the reopen, so it can take up to RESET_SETTLE_S longer.
        """
        logger.info("Reset command being sent")

        # The acceptor reboots immediately and never answers a reset.
        self._write_wrapper(self.codec.build_reset_command(), expect_reply=False)

        self.port.close()
        time.sleep(self.RESET_SETTLE_S)
        self.port.open()
        logger.info("Acceptor reset performed")

    def _handle_serial_number_request(self) -> None:
        logger.debug("Serial number command being sent")
        resp = self._write_wrapper(self.codec.build_identity_command())

        start = self.SERIAL_NUMBER_OFFSET
        end = start + self.SERIAL_NUMBER_LENGTH
        if len(resp) < end:
            logger.warning("Invalid serial number response: %s", bytes_to_text(resp) or "<empty>")
            return

        self._serial_number = format_serial_number(resp[start:end], mask=self.mask_serial_number)
        log_json(logger, logging.INFO, {"event": "serial_number", "value": self._serial_number})
