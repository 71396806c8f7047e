"""
Scan models package.
"""
from app.features.scan.models.scan import Scan, ScanStatus
from app.features.scan.models.scan_result import ScanResult
from app.features.scan.models.queue_job import ScanQueueJob, QueueJobState

__all__ = ["Scan", "ScanStatus", "ScanResult", "ScanQueueJob", "QueueJobState"]
