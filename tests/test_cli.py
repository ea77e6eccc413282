"""Tests for the command line front end."""

import io
import json

import pytest

import logger

from acceptor_config import AcceptorConfig
from APEX.apex_courier import CourierState
from APEX.apex_events import (
    ApexEvent,
    ConnectionFailureEvent,
    CreditEvent,
    Direction,
    EscrowedEvent,
    Events,
    SerialDataEvent,
)
from APEX.cli import EventPrinter, build_courier, main, parse_args


def printed(printer: EventPrinter):
    return printer.out.getvalue().splitlines()


class TestEventPrinter:

    def test_repeated_states_print_once(self) -> None:
        printer = EventPrinter(out=io.StringIO())
        for _ in range(3):
            printer(ApexEvent(Events.IDLING, "raw"))
        printer(ApexEvent(Events.ACCEPTING, "raw"))
        printer(ApexEvent(Events.IDLING, "raw"))

        assert printed(printer) == ["[EVENT] Idling", "[EVENT] Accepting", "[EVENT] Idling"]

    def test_credits_always_print(self) -> None:
        printer = EventPrinter(out=io.StringIO())
        printer(CreditEvent("$20", "raw"))
        printer(CreditEvent("$20", "raw"))
        assert printed(printer) == ["[CREDIT] $20", "[CREDIT] $20"]

    def test_escrow_dedupes_per_bill(self) -> None:
        printer = EventPrinter(out=io.StringIO())
        printer(EscrowedEvent("$5", "raw"))
        printer(EscrowedEvent("$5", "raw"))
        printer(EscrowedEvent("$10", "raw"))
        assert printed(printer) == ["[EVENT] ESCROWED ($5)", "[EVENT] ESCROWED ($10)"]

    def test_connection_failures_print_and_reset_dedupe(self) -> None:
        printer = EventPrinter(out=io.StringIO())
        printer(ApexEvent(Events.IDLING, "raw"))
        printer(ConnectionFailureEvent(5))
        printer(ApexEvent(Events.IDLING, "raw"))
        assert printed(printer) == ["[EVENT] Idling", "[COMMS] no response for 5 polls", "[EVENT] Idling"]

    def test_cassette_removed(self) -> None:
        printer = EventPrinter(out=io.StringIO())
        printer(ApexEvent(Events.CASSETTE_REMOVED, "raw"))
        assert printed(printer) == ["[EVENT] CASSETTE REMOVED"]

    def test_traffic_is_hidden_by_default(self) -> None:
        quiet = EventPrinter(out=io.StringIO())
        loud = EventPrinter(show_traffic=True, out=io.StringIO())
        for printer in (quiet, loud):
            printer(SerialDataEvent(Direction.TX, "02 08"))
        assert printed(quiet) == []
        assert printed(loud) == ["[TX] 02 08"]


class TestBuildCourier:

    def test_settings_flow_into_courier(self, tmp_path) -> None:
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"apex": {
            "port_name": "loop://",
            "poll_interval_ms": 40,
            "poll_retry_limit": 7,
            "timeout_ms": 120,
            "enabled_bills": 3,
            "mask_serial_number": True,
        }}))
        courier = build_courier(AcceptorConfig(str(path)))

        assert courier.port.port == "loop://"
        assert courier.port.timeout == 0.12
        assert courier.poll_interval == 0.04
        assert courier.retry_limit == 7
        assert courier.mask_serial_number is True
        assert courier.codec.enabled_bills == 3
        assert courier.state is CourierState.NOT_STARTED
        assert not courier.port.is_open


def test_parse_args() -> None:
    args = parse_args(["--config", "x.json", "--serial", "--traffic"])
    assert args.config == "x.json"
    assert args.serial and args.traffic
    assert not args.reset
    assert args.log_level == "INFO"


class TestPurgeLog:

    def test_flag_defaults_off(self) -> None:
        assert parse_args([]).purge_log is False
        assert parse_args(["--purge-log"]).purge_log is True

    def test_main_truncates_log_before_loading_config(self, tmp_path, monkeypatch) -> None:
        log_file = tmp_path / "apex.log"
        log_file.write_text("old line\n")
        monkeypatch.setattr(logger, "LOG_FILE", str(log_file))

        with pytest.raises(SystemExit):
            main(["--purge-log", "--config", str(tmp_path / "missing.json")])

        assert log_file.read_text() == ""

    def test_log_kept_without_flag(self, tmp_path, monkeypatch) -> None:
        log_file = tmp_path / "apex.log"
        log_file.write_text("old line\n")
        monkeypatch.setattr(logger, "LOG_FILE", str(log_file))

        with pytest.raises(SystemExit):
            main(["--config", str(tmp_path / "missing.json")])

        assert log_file.read_text() == "old line\n"
