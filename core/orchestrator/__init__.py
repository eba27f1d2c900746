"""Orchestration of the daily ingestion cycle."""
from .daily_run import DailyRunner

__all__ = ['DailyRunner']
