"""Applying technical QC fixes and enforcing the structural gate."""

from __future__ import annotations

from pydantic import ValidationError

from ..errors import PlanValidationError
from ..instrumentation import get_logger
from ..sessions.models import Plan, QCFix, SequenceBase, sequence_adapter

logger = get_logger()

# Fields owned by the pipeline or the orchestrator; fixes never touch them.
PROTECTED_FIELDS = frozenset(
    {
        "order",
        "start_offset_sec",
        "status",
        "cost",
        "error",
        "error_kind",
        "assets",
        "qc_issues",
        "export_files",
    }
)


def resolve_field_name(sequence: SequenceBase, name: str) -> str | None:
    """Map a wire alias (``durationSec``) or Python name onto the model field."""
    fields = type(sequence).model_fields
    if name in fields:
        return name
    for field_name, info in fields.items():
        if info.alias == name:
            return field_name
    return None


def apply_fixes(plan: Plan, fixes: list[QCFix]) -> list[QCFix]:
    """Apply each usable fix in place and refresh the derived fields.

    A fix is used only when its sequence exists and it carries a non-null
    value. Unknown fields and values that would make the variant invalid are
    skipped. Returns the fixes that were applied.
    """
    applied: list[QCFix] = []
    for fix in fixes:
        sequence = plan.get(fix.sequence_order)
        if sequence is None or not fix.field or fix.suggested_value is None:
            continue
        field_name = resolve_field_name(sequence, fix.field)
        if field_name is None or field_name in PROTECTED_FIELDS:
            logger.warning("Skipping fix for seq %s: unsupported field %r", fix.sequence_order, fix.field)
            continue

        data = sequence.model_dump()
        data[field_name] = fix.suggested_value
        try:
            updated = sequence_adapter.validate_python(data)
        except ValidationError as exc:
            logger.warning(
                "Skipping fix for seq %s: %s=%r is invalid (%s)",
                fix.sequence_order,
                fix.field,
                fix.suggested_value,
                exc.error_count(),
            )
            continue
        plan.replace(updated)
        applied.append(fix)
        logger.info("Applied fix: seq %s %s -> %r", fix.sequence_order, fix.field, fix.suggested_value)

    plan.recompute()
    return applied


def validate_structure(plan: Plan) -> list[str]:
    """Hard technical gate run after fixes.

    Raises :class:`PlanValidationError` for an empty plan, orders that are not
    exactly ``1..n`` or non-positive durations. Background reuse references
    that do not point strictly backwards at a background-producing sequence
    are cleared; the returned notes describe each one.
    """
    if not plan.sequences:
        raise PlanValidationError("Plan has no sequences")

    orders = [seq.order for seq in plan.sequences]
    expected = list(range(1, len(orders) + 1))
    if orders != expected:
        raise PlanValidationError(f"Sequence orders must be 1..{len(orders)} in plan order, got {orders}")

    bad_durations = [seq.order for seq in plan.sequences if seq.duration_sec <= 0]
    if bad_durations:
        raise PlanValidationError(f"Sequences {bad_durations} have non-positive durations")

    notes: list[str] = []
    for seq in plan.sequences:
        ref = getattr(seq, "reuse_background_from", None)
        if ref is None:
            continue
        target = plan.get(ref) if ref < seq.order else None
        if target is None or not target.produces_background:
            notes.append(f"Sequence {seq.order}: cleared reuseBackgroundFrom={ref}")
            seq.reuse_background_from = None  # type: ignore[attr-defined]

    if notes:
        plan.recompute()
    return notes
