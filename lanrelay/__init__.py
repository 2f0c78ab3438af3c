"""Stream orchestration and relay supervision for a LAN audio broadcaster."""

__version__ = "0.1.0"
