"""Scanning: tool invocation, output adapters, report storage and aggregation."""

from __future__ import annotations

from shipgate.scanning.adapters import ADAPTERS, FindingsAdapter, get_adapter
from shipgate.scanning.aggregator import ScanAggregator
from shipgate.scanning.runner import CommandInvoker, ScanRunner, ToolInvoker, ToolOutput
from shipgate.scanning.storage import (
    FileReportStore,
    MemoryReportStore,
    ReportStore,
    StoredReport,
)

__all__: list[str] = [
    "ADAPTERS",
    "FindingsAdapter",
    "get_adapter",
    "ScanAggregator",
    "CommandInvoker",
    "ScanRunner",
    "ToolInvoker",
    "ToolOutput",
    "FileReportStore",
    "MemoryReportStore",
    "ReportStore",
    "StoredReport",
]
