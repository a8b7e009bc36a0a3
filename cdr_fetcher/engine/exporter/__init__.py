"""Record and failure sinks."""

from .base import BaseFailureSink, BaseRecordSink
from .file_exporter import CsvFailureReport, JsonFileSink

__all__ = ["BaseFailureSink", "BaseRecordSink", "CsvFailureReport", "JsonFileSink"]
