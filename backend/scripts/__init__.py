"""
Backend Scripts Module

This module contains utility scripts for operations and maintenance.

Available scripts:
    - dispatch_notifications.py: Runs one outbox + admin digest dispatch pass

Usage:
    python -m scripts.dispatch_notifications --include-today
"""
