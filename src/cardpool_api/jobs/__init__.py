"""Cron-schedulable job entrypoints."""
