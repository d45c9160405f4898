"""Responses of the cron endpoints."""

from pydantic import BaseModel


class SweepResponse(BaseModel):
    processed: int = 0
    sent: int = 0
    failed: int = 0
    triggered: int = 0
    cancelled: int = 0
    recovered: int = 0
    purged: int = 0


class CronStatusResponse(BaseModel):
    overdue_secrets: int
    pending_reminders: int
    due_reminders: int
    pending_deliveries: int
    failed_deliveries: int
    timestamp: str


class RedeliveryResponse(BaseModel):
    secret_id: str
    retried: int
    sent: int
    failed: int
