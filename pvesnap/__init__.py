"""Snapshot management for guests spread across a Proxmox VE cluster."""

__version__ = '0.1.0'
