import json
import sys

from APEX.apex_packet import DEFAULT_BILL_NAMES


class AcceptorConfig:
    """A simple class to load and manage the acceptor configuration from a JSON file."""
    def __init__(self, config_path='config.json'):
        try:
            with open(config_path, 'r') as f:
                config_data = json.load(f)
        except (FileNotFoundError, json.JSONDecodeError) as e:
            print(f"Error: Could not load or parse {config_path}. {e}")
            print("Please ensure 'config.json' exists and is correctly formatted.")
            sys.exit(1)

        apex = config_data.get("apex")
        if not isinstance(apex, dict) or not apex.get("port_name"):
            print(f"Error: an 'apex' block with 'port_name' is required in {config_path}.")
            sys.exit(1)

        # keep names close to JSON keys for clarity
        self.port_name: str = apex["port_name"]
        self.baud_rate: int = int(apex.get("baud_rate", 9600))
        self.poll_interval_ms: int = int(apex.get("poll_interval_ms", 100))
        self.poll_retry_limit: int = int(apex.get("poll_retry_limit", 5))
        self.timeout_ms: int = int(apex.get("timeout_ms", 250))
        self.enabled_bills: int = int(apex.get("enabled_bills", 0x7F))
        self.bill_names = list(apex.get("bill_names", DEFAULT_BILL_NAMES))
        self.mask_serial_number: bool = bool(apex.get("mask_serial_number", False))

        if len(self.bill_names) != 7:
            print("Error: 'bill_names' must list exactly 7 names (bill index 1..7).")
            sys.exit(1)

    @property
    def timeout_s(self) -> float:
        return self.timeout_ms / 1000.0

    def to_dict(self) -> dict:
        return {
            "apex": {
                "port_name": self.port_name,
                "baud_rate": self.baud_rate,
                "poll_interval_ms": self.poll_interval_ms,
                "poll_retry_limit": self.poll_retry_limit,
                "timeout_ms": self.timeout_ms,
                "enabled_bills": self.enabled_bills,
                "bill_names": list(self.bill_names),
                "mask_serial_number": self.mask_serial_number,
            },
        }
