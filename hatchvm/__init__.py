"""Ephemeral feature VMs and unattended agent spikes."""

__version__ = '0.1.0'
