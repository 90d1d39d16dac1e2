"""
Service modules for the audio processing pipeline.
"""

from .interfaces import ObjectStorage, WriteSink, ProgressSink, DocumentStore
from .local_backends import LocalObjectStorage, JsonDocumentStore, JsonProgressSink
from .process_channel import ExternalProcessChannel, DiagnosticParser, ChannelState, ProcessResult
from .progress import ProgressAggregator, ProgressRange, acquisition_band_end
from .media_probe import MediaProbe
from .clip_fetcher import ClipFetcher
from .acquisition import AcquisitionStage, AcquisitionPolicy, AcquiredInput
from .transcode import TranscodeStage, TranscodeResult
from .merge import MergeStage, MergeResult
from .orchestrator import PipelineOrchestrator

__all__ = [
    "ObjectStorage",
    "WriteSink",
    "ProgressSink",
    "DocumentStore",
    "LocalObjectStorage",
    "JsonDocumentStore",
    "JsonProgressSink",
    "ExternalProcessChannel",
    "DiagnosticParser",
    "ChannelState",
    "ProcessResult",
    "ProgressAggregator",
    "ProgressRange",
    "acquisition_band_end",
    "MediaProbe",
    "ClipFetcher",
    "AcquisitionStage",
    "AcquisitionPolicy",
    "AcquiredInput",
    "TranscodeStage",
    "TranscodeResult",
    "MergeStage",
    "MergeResult",
    "PipelineOrchestrator",
]
