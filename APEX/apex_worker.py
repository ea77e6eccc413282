# APEX/apex_worker.py
from PySide6.QtCore import QObject, Signal, Slot
from typing import Optional

from .apex_courier import Courier
from .apex_events import ConnectionFailureEvent, CreditEvent, EscrowedEvent, SerialDataEvent
from .apex_port import ApexPort


class ApexWorker(QObject):
    """
    Qt-friendly front for a Courier.

    The courier already polls on its own thread, so there is no QThread here:
    events are re-emitted as signals from the courier thread and Qt queues them
    onto whichever thread the receiving slots live in.
    """

    # UI-friendly signals
    status = Signal(str)
    started = Signal()
    stopped = Signal()
    eventReceived = Signal(object)      # any courier event except raw serial traffic
    credit = Signal(str)                # bill name
    escrowed = Signal(str)              # bill name
    connectionFailure = Signal(int)     # consecutive failed polls

    def __init__(self,
                 port: str,
                 baud: int = 9600,
                 poll_ms: int = 100,
                 parent: Optional[QObject] = None,
                 courier: Optional[Courier] = None):
        super().__init__(parent)
        # Allow DI for tests; otherwise create a real courier
        self.courier = courier or Courier(ApexPort(port, baud), poll_interval_ms=poll_ms)
        self._running = False

    @Slot()
    def start(self):
        """Start polling. Safe to call once; repeated calls while running are ignored."""
        if self._running:
            return
        self._running = True
        self.courier.subscribe(self._on_event)
        self.courier.start()
        self.status.emit(f"Polling {self.courier.port.port}")
        self.started.emit()

    @Slot()
    def stop(self):
        """Stop polling and wait for the courier thread to finish."""
        if not self._running:
            return
        self._running = False
        self.courier.request_stop()
        self.courier.unsubscribe(self._on_event)
        self.stopped.emit()

    @Slot(bool)
    def setPaused(self, pause: bool):
        self.courier.set_paused(pause)
        self.status.emit("Paused" if pause else "Resumed")

    @Slot()
    def requestReset(self):
        self.courier.request_reset()

    @Slot()
    def requestSerialNumber(self):
        self.courier.request_identity_query()

    # --- Courier event bridge (runs on the courier thread) ---
    def _on_event(self, ev):
        if isinstance(ev, SerialDataEvent):
            return
        self.eventReceived.emit(ev)
        if isinstance(ev, CreditEvent):
            self.credit.emit(ev.bill_name)
        elif isinstance(ev, EscrowedEvent):
            self.escrowed.emit(ev.bill_name)
        elif isinstance(ev, ConnectionFailureEvent):
            self.connectionFailure.emit(ev.failure_count)
