"""Bulk image import: convert raw photos, group them by look and commit the records."""

from bulk_import.classifier import classify, extract_group_key, infer_subtype
from bulk_import.controller import PipelineController, PipelineSummary, build_controller
from bulk_import.errors import (
    BulkImportError,
    CommitError,
    ConversionError,
    InvalidTransitionError,
    PersistenceError,
    StageTransitionError,
)
from bulk_import.schema import (
    Classification,
    CommittedGroup,
    CommittedItem,
    ConversionState,
    ConversionStatus,
    Group,
    Item,
    PipelineStage,
    RawItem,
    Subtype,
)

__all__ = [
    "BulkImportError",
    "Classification",
    "CommitError",
    "CommittedGroup",
    "CommittedItem",
    "ConversionError",
    "ConversionState",
    "ConversionStatus",
    "Group",
    "InvalidTransitionError",
    "Item",
    "PersistenceError",
    "PipelineController",
    "PipelineStage",
    "PipelineSummary",
    "RawItem",
    "StageTransitionError",
    "Subtype",
    "build_controller",
    "classify",
    "extract_group_key",
    "infer_subtype",
]
