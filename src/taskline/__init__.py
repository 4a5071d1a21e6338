"""taskline: background job queue with retries and cron scheduling."""

__version__ = "0.1.0"
