"""Bluetooth pairing and serial log capture helpers for a ZMK keyboard."""

__version__ = "0.1.0"
