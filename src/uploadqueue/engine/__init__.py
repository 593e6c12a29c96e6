"""Engine module for upload orchestration."""

from uploadqueue.engine.orchestrator import UploadOrchestrator

__all__ = ["UploadOrchestrator"]
