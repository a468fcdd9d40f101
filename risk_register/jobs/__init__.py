"""
Background Jobs for the Risk Register.

This module contains scheduled jobs:
- exception_expiry_cron: Daily expiry of tolerance exceptions and
  reporting of overdue hard-limit breaches
"""

from .exception_expiry_cron import run_exception_expiry_job

__all__ = ["run_exception_expiry_job"]
