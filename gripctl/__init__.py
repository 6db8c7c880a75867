"""Bluetooth grip-strength sensor toolkit."""
