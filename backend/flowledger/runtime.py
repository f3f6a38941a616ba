# Overview: Accessors for the app-owned notification bus and sync queue.

from __future__ import annotations

from flask import current_app

NOTIFICATION_BUS_EXTENSION = "flowledger.notification_bus"
SYNC_QUEUE_EXTENSION = "flowledger.sync_queue"


def get_notification_bus():
    return current_app.extensions[NOTIFICATION_BUS_EXTENSION]


def get_sync_queue():
    return current_app.extensions[SYNC_QUEUE_EXTENSION]
