"""Ingestion pipeline modules for the REE electric balance service."""

from . import client, config, errors, load, log, manager, models, normalize, retry, run, scheduler

__all__ = [
    "client",
    "config",
    "errors",
    "load",
    "log",
    "manager",
    "models",
    "normalize",
    "retry",
    "run",
    "scheduler",
]
