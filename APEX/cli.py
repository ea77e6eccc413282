# APEX/cli.py
import argparse
import sys
import time
from typing import Optional

from acceptor_config import AcceptorConfig
import logger
from APEX.apex_courier import Courier
from APEX.apex_events import (
    ApexEvent,
    ConnectionFailureEvent,
    CreditEvent,
    EscrowedEvent,
    Events,
    SerialDataEvent,
)
from APEX.apex_packet import ApexCodec
from APEX.apex_port import ApexPort


class EventPrinter:
    """
    Console listener for courier events.

    Apex reports its full state on every poll, so idle / cassette / escrow
    states repeat constantly; those only print when they change. Raw TX/RX
    frames print only with `show_traffic`.
    """

    def __init__(self, show_traffic: bool = False, out=None):
        self.show_traffic = show_traffic
        self.out = out or sys.stdout
        self._last_label_key: Optional[str] = None  # e.g. "Idling", "Escrowed:$20"

    def _print(self, line: str):
        print(line, file=self.out)

    def _emit_on_change(self, label_key: str, line: str):
        """Print only when the state (label_key) changes."""
        if self._last_label_key == label_key:
            return
        self._last_label_key = label_key
        self._print(line)

    def __call__(self, ev):
        """
        Pretty-print a single courier event.
        - CREDIT and CONNECTION FAILURE always print (no dedupe).
        - Everything else only prints when its label key changes.
        """
        if isinstance(ev, SerialDataEvent):
            if self.show_traffic:
                self._print(f"[{ev.direction.value.upper()}] {ev.data}")
            return

        if isinstance(ev, CreditEvent):
            self._print(f"[CREDIT] {ev.bill_name}")
            return

        if isinstance(ev, ConnectionFailureEvent):
            self._last_label_key = None
            self._print(f"[COMMS] no response for {ev.failure_count} polls")
            return

        if isinstance(ev, EscrowedEvent):
            self._emit_on_change(f"Escrowed:{ev.bill_name}", f"[EVENT] ESCROWED ({ev.bill_name})")
            return

        if isinstance(ev, ApexEvent):
            # Cassette state is reported on every poll; only a change is interesting.
            if ev.kind is Events.CASSETTE_REMOVED:
                self._emit_on_change(ev.kind.value, "[EVENT] CASSETTE REMOVED")
            else:
                self._emit_on_change(ev.kind.value, f"[EVENT] {ev.kind.value}")


def build_courier(cfg: AcceptorConfig) -> Courier:
    port = ApexPort(cfg.port_name, cfg.baud_rate, timeout=cfg.timeout_s)
    codec = ApexCodec(enabled_bills=cfg.enabled_bills, bill_names=cfg.bill_names)
    return Courier(
        port,
        codec,
        poll_interval_ms=cfg.poll_interval_ms,
        retry_limit=cfg.poll_retry_limit,
        timeout=cfg.timeout_s,
        mask_serial_number=cfg.mask_serial_number,
    )


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Poll a Pyramid Apex bill acceptor over RS-232.")
    parser.add_argument("--config", default="config.json", help="path to the JSON config (default: config.json)")
    parser.add_argument("--serial", action="store_true", help="query and print the serial number on startup")
    parser.add_argument("--reset", action="store_true", help="soft-reset the acceptor on startup")
    parser.add_argument("--traffic", action="store_true", help="print raw TX/RX frames")
    parser.add_argument("--log-level", default="INFO")
    parser.add_argument("--purge-log", action="store_true", help="truncate the log file before starting")
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    logger.set_level(args.log_level)
    if args.purge_log:
        logger.purge_log()
    cfg = AcceptorConfig(args.config)

    courier = build_courier(cfg)
    courier.subscribe(EventPrinter(show_traffic=args.traffic))

    if args.reset:
        courier.request_reset()
    if args.serial:
        courier.request_identity_query()

    courier.start()
    print("Press Ctrl+C to exit.")
    reported = False
    try:
        while True:
            time.sleep(0.25)
            if args.serial and not reported and courier.get_serial_number():
                print(f"[STATUS] model {courier.get_model()}, firmware {courier.get_firmware_revision()}, "
                      f"serial {courier.get_serial_number()}")
                reported = True
    except KeyboardInterrupt:
        pass
    finally:
        courier.request_stop()


if __name__ == "__main__":
    main()
