"""
Validation Engine

Pure functions that decide whether a proposed drop, attachment or job
finalization is legal against a BoardSnapshot. Nothing here mutates state;
every rejection is returned as a Decision value, never raised.

Checks are greedy and evaluated against the pre-operation snapshot only.
"""

from typing import Collection, List, Optional, Union

from magnetboard.engine.board import BoardSnapshot
from magnetboard.models.entities import (
    EQUIPMENT_TYPES,
    Assignment,
    Job,
    Resource,
    ResourceType,
    RowType,
)
from magnetboard.models.outcomes import ACCEPTED, Decision, ErrorKind, reject
from magnetboard.models.rules import InteractionRule


def _coerce_resource_type(value: Union[ResourceType, str, None]) -> Optional[ResourceType]:
    if isinstance(value, ResourceType):
        return value
    try:
        return ResourceType(value)
    except ValueError:
        return None


def _coerce_row(value: Union[RowType, str, None]) -> Optional[RowType]:
    if isinstance(value, RowType):
        return value
    try:
        return RowType(value)
    except ValueError:
        return None


def validate_drop(
    resource_type: Union[ResourceType, str],
    row: Union[RowType, str],
    job: Job,
    snapshot: BoardSnapshot,
    ignore: Collection[str] = (),
    check_capacity: bool = True,
) -> Decision:
    """
    Check that a resource type may occupy a row of a job.

    The row policy is the Rule Store's drop rule for the job type (falling
    back to the default rows), narrowed by the job's own JobRow override when
    it has one. A job that lists rows only has those rows.

    Args:
        resource_type: Type of the resource being dropped
        row: Target row
        job: Target job
        snapshot: Pre-operation board snapshot
        ignore: Assignment ids to leave out of the row count (the records
            being moved)
        check_capacity: False for attached assignments, which ride in
            their parent's slot and never count toward max_count

    Returns:
        ACCEPTED, or a RowTypeMismatch / RowFull rejection

    Complexity: O(k) where k = assignments in the job
    """
    rtype = _coerce_resource_type(resource_type)
    target_row = _coerce_row(row)
    if rtype is None or target_row is None:
        return reject(ErrorKind.ROW_TYPE_MISMATCH, f"unknown resource type or row: {resource_type!r} / {row!r}")

    job_row = job.row_config(target_row)
    if job.rows and job_row is None:
        return reject(ErrorKind.ROW_TYPE_MISMATCH, f"job {job.id} has no {target_row.value} row")

    rule = snapshot.rules.drop_rule(target_row, job.type)
    if rule is None and (job_row is None or job_row.allowed_types is None):
        return reject(ErrorKind.ROW_TYPE_MISMATCH, f"no drop rule for row {target_row.value}")

    allowed = rule.allowed_types if rule is not None else None
    max_count = rule.max_count if rule is not None else None
    if job_row is not None:
        # Overrides only narrow the rule, never widen it
        if job_row.allowed_types is not None:
            override = frozenset(job_row.allowed_types)
            allowed = override if allowed is None else allowed & override
        if job_row.max_count is not None:
            max_count = job_row.max_count if max_count is None else min(max_count, job_row.max_count)

    if rtype not in allowed:
        return reject(ErrorKind.ROW_TYPE_MISMATCH, f"{rtype.value} cannot be dropped into {target_row.value} row")

    if check_capacity and max_count is not None:
        occupied = [a for a in snapshot.graph.in_row(job.id, target_row, roots_only=True) if a.id not in ignore]
        if len(occupied) >= max_count:
            return reject(ErrorKind.ROW_FULL, f"{target_row.value} row of job {job.id} is full (max {max_count})")

    return ACCEPTED


def resolve_interaction(
    source_type: ResourceType, target_type: ResourceType, snapshot: BoardSnapshot
) -> Optional[InteractionRule]:
    """Rule for the pair, looked up as (source, target) first and then reversed."""
    return snapshot.rules.pair_rule(source_type, target_type)


def check_equipment_authorization(source: Resource, target: Resource) -> Decision:
    """
    Operator/equipment safety rule.

    An operator whose allowed_equipment list is non-empty may only attach to
    (or be attached by) equipment of a listed type. An empty or missing list
    means the operator is authorized for everything.
    """
    if source.type is ResourceType.OPERATOR and target.type in EQUIPMENT_TYPES:
        operator, equipment = source, target
    elif target.type is ResourceType.OPERATOR and source.type in EQUIPMENT_TYPES:
        operator, equipment = target, source
    else:
        return ACCEPTED
    if not operator.allowed_equipment:
        return ACCEPTED
    if equipment.type.value in operator.allowed_equipment:
        return ACCEPTED
    return reject(
        ErrorKind.NOT_AUTHORIZED_EQUIPMENT,
        f"operator {operator.id} is not authorized for {equipment.type.value}",
    )


def validate_attach(source: Assignment, target: Assignment, snapshot: BoardSnapshot) -> Decision:
    """
    Check that source may attach to target.

    Order of checks:
    1. Self-attachment (CycleDetected)
    2. Same job (CrossJobAttachment)
    3. An attachable interaction rule exists for the pair
       (MaxAttachmentExceeded with an effective max of 0 when none does)
    4. Target's ancestor chain does not contain source (CycleDetected)
    5. Operator equipment authorization (NotAuthorizedEquipment)
    6. Neither end of the pair exceeds the rule's max of partners of the
       other's type, counting children and parent (MaxAttachmentExceeded)

    Args:
        source: Assignment being attached
        target: Assignment it attaches to
        snapshot: Pre-operation board snapshot

    Returns:
        ACCEPTED or a typed rejection

    Complexity: O(d + c) where d = depth of target, c = children of target
    """
    if source.id == target.id:
        return reject(ErrorKind.CYCLE_DETECTED, f"assignment {source.id} cannot attach to itself")
    if source.job_id != target.job_id:
        return reject(
            ErrorKind.CROSS_JOB_ATTACHMENT,
            f"assignment {source.id} is on job {source.job_id}, target is on job {target.job_id}",
        )

    source_resource = snapshot.resource_of(source)
    target_resource = snapshot.resource_of(target)
    if source_resource is None or target_resource is None:
        return reject(ErrorKind.ROW_TYPE_MISMATCH, "attachment references an unknown resource")

    rule = resolve_interaction(source_resource.type, target_resource.type, snapshot)
    if rule is None or not rule.can_attach:
        return reject(
            ErrorKind.MAX_ATTACHMENT_EXCEEDED,
            f"no rule allows {source_resource.type.value} to attach to {target_resource.type.value} (max 0)",
        )

    if source.id in snapshot.graph.ancestors(target.id):
        return reject(ErrorKind.CYCLE_DETECTED, f"{source.id} is already an ancestor of {target.id}")

    authorization = check_equipment_authorization(source_resource, target_resource)
    if not authorization:
        return authorization

    return count_within_limit(source, target, rule, snapshot)


def _count_partners(
    anchor: Assignment,
    partner_type: ResourceType,
    snapshot: BoardSnapshot,
    exclude: Collection[str],
    include_parent: bool,
) -> int:
    partners = list(snapshot.graph.children(anchor.id))
    if include_parent:
        parent = snapshot.graph.parent(anchor.id)
        if parent is not None:
            partners.append(parent)
    current = 0
    for partner in partners:
        if partner.id in exclude:
            continue
        resource = snapshot.resource_of(partner)
        if resource is not None and resource.type is partner_type:
            current += 1
    return current


def count_within_limit(
    source: Assignment,
    target: Assignment,
    rule: InteractionRule,
    snapshot: BoardSnapshot,
) -> Decision:
    """
    Reject when either end of the pair already holds rule.max_count partners
    of the other end's type.

    A pair rule holds whichever way the two were dragged, so an excavator
    hanging under one operator still counts that operator when a second
    operator is dropped on it. Partners are children plus the parent; the
    source's current parent is left out because attaching replaces it.
    """
    source_type = snapshot.resources[source.resource_id].type
    target_type = snapshot.resources[target.resource_id].type
    exclude = {source.id, target.id}
    for anchor, partner_type, include_parent in (
        (target, source_type, True),
        (source, target_type, False),
    ):
        current = _count_partners(anchor, partner_type, snapshot, exclude, include_parent)
        if current >= rule.max_count:
            return reject(
                ErrorKind.MAX_ATTACHMENT_EXCEEDED,
                f"{anchor.id} already has {current} {partner_type.value} attached (max {rule.max_count})",
            )
    return ACCEPTED


def attached_partner_types(assignment: Assignment, snapshot: BoardSnapshot) -> List[ResourceType]:
    """Types of everything directly attached to an assignment: its children and its parent."""
    partners = list(snapshot.graph.children(assignment.id))
    parent = snapshot.graph.parent(assignment.id)
    if parent is not None:
        partners.append(parent)
    types = []
    for partner in partners:
        resource = snapshot.resource_of(partner)
        if resource is not None:
            types.append(resource.type)
    return types


def validate_finalize(job: Job, assignments: List[Assignment], snapshot: BoardSnapshot) -> Decision:
    """
    Check that every assignment whose resource type has required partners
    has each of them attached. Collects all violations instead of stopping
    at the first so the caller can show the full list.
    """
    violations: List[str] = []
    for assignment in assignments:
        if assignment.job_id != job.id:
            continue
        resource = snapshot.resource_of(assignment)
        if resource is None:
            continue
        required = snapshot.rules.required_partners(resource.type)
        if not required:
            continue
        present = set(attached_partner_types(assignment, snapshot))
        for partner_type in sorted(required, key=lambda t: t.value):
            if partner_type not in present:
                violations.append(f"{resource.type.value} requires {partner_type.value}")
    if violations:
        return reject(
            ErrorKind.MISSING_REQUIRED_ATTACHMENT,
            f"job {job.id} has {len(violations)} missing required attachment(s)",
            tuple(violations),
        )
    return ACCEPTED
