"""
Response models for the health and info endpoints
"""

from pydantic import BaseModel, Field
from typing import Any, Dict, List
from datetime import datetime


class HealthResponse(BaseModel):
    """Liveness and admission snapshot"""

    status: str = Field(description="healthy when the queue is connected")
    service: str
    timestamp: datetime = Field(default_factory=datetime.now)
    uptime: float = Field(description="Seconds since start")
    queueConnected: bool
    activeJobs: Dict[str, int]
    subscribed: Dict[str, bool]
    metrics: Dict[str, Any] = Field(default_factory=dict)


class InfoResponse(BaseModel):
    """Static deployment metadata"""

    service: str
    version: str
    port: int
    deploymentMode: str
    rabbitmq: Dict[str, Any]
    ceilings: Dict[str, int]
    storage: Dict[str, str]
    tempDir: str
    queues: Dict[str, List[str]]
