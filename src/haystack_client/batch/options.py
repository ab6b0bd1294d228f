"""Pydantic models for batch operation options

Each batch operation has a profile fixing its default batch size, the
largest batch size the API server accepts for it and whether results are
returned by default. Options given by the caller override the client's
configured defaults, which override the profile.
"""

from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

PERFORM_OP_IN_BATCH_MAX_BATCH_SIZE = 10**9
PERFORM_OP_IN_BATCH_MAX_PARALLEL = 100


@dataclass(frozen=True)
class OperationProfile:
    """Defaults and limits of one batch operation"""

    batch_size: int
    max_batch_size: int
    return_result: bool = False


PROFILES: dict[str, OperationProfile] = {
    "perform_op_in_batch": OperationProfile(
        100, PERFORM_OP_IN_BATCH_MAX_BATCH_SIZE
    ),
    "his_read": OperationProfile(100, 1000, return_result=True),
    "his_write": OperationProfile(10000, 20000),
    "his_delete": OperationProfile(100, 1000),
    "create": OperationProfile(2000, 2000),
    "update": OperationProfile(2000, 2000),
    "delete_by_id": OperationProfile(30, 30),
    "delete_by_filter": OperationProfile(30, 30),
    "his_read_by_filter": OperationProfile(100, 100, return_result=True),
    "update_or_create": OperationProfile(2000, 2000, return_result=True),
    "multi_find": OperationProfile(
        100, PERFORM_OP_IN_BATCH_MAX_BATCH_SIZE, return_result=True
    ),
    "his_delete_by_filter": OperationProfile(100, 1000),
    "update_by_filter": OperationProfile(2000, 2000),
    "add_children_by_filter": OperationProfile(2000, 2000),
    "migrate_history": OperationProfile(10000, 10000),
}

ArgTransformer = Callable[[list], list]


class BatchOptions(BaseModel):
    """Options controlling how a batch operation is partitioned and paced"""

    model_config = ConfigDict(arbitrary_types_allowed=True, extra="forbid")

    batch_size: int = Field(
        100, ge=1, strict=True, description="Maximum units per partition"
    )
    batch_delay: float = Field(
        0, ge=0, description="Seconds between dispatches within a lane"
    )
    parallel: int = Field(
        1,
        ge=1,
        le=PERFORM_OP_IN_BATCH_MAX_PARALLEL,
        strict=True,
        description="Number of concurrent dispatch lanes",
    )
    parallel_delay: float = Field(
        0, ge=0, description="Seconds between the start of successive lanes"
    )
    return_result: bool = Field(
        False, strict=True, description="Keep successful partition results"
    )
    transformer: ArgTransformer | None = Field(
        None,
        description="Maps each partition's argument list before dispatch",
    )
    progress: Any = Field(
        None, description="ProgressSink advanced as partitions complete"
    )

    @field_validator("batch_size")
    @classmethod
    def validate_batch_size(cls, v, info: ValidationInfo):
        """Enforce the operation's maximum batch size"""
        context = info.context or {}
        limit = context.get("max_batch_size", PERFORM_OP_IN_BATCH_MAX_BATCH_SIZE)
        if v > limit:
            raise ValueError(f"batch_size must be at most {limit}")
        return v

    @field_validator("progress")
    @classmethod
    def validate_progress(cls, v):
        if v is not None and not all(
            callable(getattr(v, name, None))
            for name in ("start", "advance", "close")
        ):
            raise ValueError("progress must implement start, advance and close")
        return v

    def explicit(self) -> dict[str, Any]:
        """Return only the options that were set explicitly"""
        return {name: getattr(self, name) for name in self.model_fields_set}


def _as_dict(options: "BatchOptions | Mapping[str, Any] | None") -> dict:
    if options is None:
        return {}
    if isinstance(options, BatchOptions):
        return options.explicit()
    return dict(options)


def resolve_options(
    operation: str,
    options: "BatchOptions | Mapping[str, Any] | None" = None,
    defaults: "BatchOptions | Mapping[str, Any] | None" = None,
) -> BatchOptions:
    """Build validated options for an operation

    Args:
        operation: Profile name (e.g. "his_write")
        options: Options given for this call
        defaults: Client-level defaults configured for the operation

    Returns:
        BatchOptions with profile defaults filled in

    Raises:
        KeyError: If the operation has no profile
        pydantic.ValidationError: If an option is invalid for the operation
    """
    profile = PROFILES[operation]
    values: dict[str, Any] = {
        "batch_size": profile.batch_size,
        "return_result": profile.return_result,
    }
    values.update(_as_dict(defaults))
    values.update(_as_dict(options))
    return BatchOptions.model_validate(
        values, context={"max_batch_size": profile.max_batch_size}
    )
