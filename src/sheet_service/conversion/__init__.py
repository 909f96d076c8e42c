"""
Domain layer for sheet music conversion.
Provides interfaces (gateways), the conversion pipeline and a service to
orchestrate conversion jobs, abstracting storage and the external engines so
front-ends (HTTP or others) can use the same core logic.
"""

from .interfaces import JobStatus, ScoreRecord, StageResult, StageRunner, StorageGateway
from .pipeline import ScorePipeline
from .service import ConversionService
