# sitenotify/core/dispatch/__init__.py
"""
Batch dispatch engine, isolated from channel transports and HTTP.

This package tracks bulk notification jobs:
- ``models``: Job state, status machine, snapshots
- ``job_store``: per-job serialized in-memory storage
- ``dispatcher``: request validation, pre-screening, scheduling
- ``worker_pool``: bounded concurrent senders
- ``progress`` / ``cancellation`` / ``retry``: operator-facing operations

Dispatch code must NOT import FastAPI or concrete channel modules;
channels and recipient directories are injected via ``ports``.
"""
