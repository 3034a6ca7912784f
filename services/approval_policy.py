"""
Order approval (vendor negotiation) rules.

- Stage rules live here so route handlers only translate results to HTTP.
- No Flask / DB dependency: callers pass plain values or model objects.

Flow: draft -> negotiating -> approved. The PM selects items and sends the
approval (draft -> negotiating); PM and vendor both sign off; only then can
the approval move to approved, after which it is read-only.
"""

from __future__ import annotations

import datetime
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from constants import APPROVAL_STAGES, VENDOR_VISIBLE_STAGES


class ApprovalRuleError(Exception):
    """Rule violation; status is the HTTP status the API answers with."""

    def __init__(self, message: str, status: int = 400):
        super().__init__(message)
        self.message = message
        self.status = status


STAGE_ORDER: Dict[str, int] = {stage: i for i, stage in enumerate(APPROVAL_STAGES)}


@dataclass
class ApprovalUpdate:
    """Resolved field changes for one PATCH request."""
    changes: Dict[str, Any] = field(default_factory=dict)

    @property
    def stage_changed(self) -> bool:
        return 'stage' in self.changes


def check_editable(approval) -> None:
    if approval.deleted_at is not None:
        raise ApprovalRuleError('Cannot update deleted approval')
    if approval.stage == 'approved':
        raise ApprovalRuleError('Approved orders are read-only')


def validate_stage_change(current: str, requested: str, pm_approved: bool, vendor_approved: bool) -> None:
    """Raise ApprovalRuleError unless current -> requested is a legal move."""
    if requested not in STAGE_ORDER:
        raise ApprovalRuleError('Invalid stage')
    if requested == current:
        return

    current_idx = STAGE_ORDER.get(current)
    requested_idx = STAGE_ORDER[requested]
    if current_idx is None or abs(requested_idx - current_idx) > 1:
        raise ApprovalRuleError(
            'Cannot skip stages. Can only move forward or backward one step.'
        )

    if requested == 'approved' and not (pm_approved and vendor_approved):
        raise ApprovalRuleError('Both PM and Vendor must approve before moving to approved stage')


def check_vendor_access(approval, vendor_id: Optional[str]) -> None:
    """A vendor user may only see approvals of their own vendor."""
    if not vendor_id or approval.vendor_id != vendor_id:
        raise ApprovalRuleError('Access denied', status=403)


def check_vendor_can_view(approval, vendor_id: Optional[str]) -> None:
    check_vendor_access(approval, vendor_id)
    if approval.stage not in VENDOR_VISIBLE_STAGES:
        raise ApprovalRuleError('Access denied', status=403)


def resolve_update(approval, payload: Dict[str, Any], is_vendor: bool,
                   vendor_id: Optional[str] = None,
                   now: Optional[datetime.datetime] = None) -> ApprovalUpdate:
    """
    Validate a PATCH payload (stage, pmApproved, vendorApproved,
    disclaimerAccepted) against the approval and the caller's role.

    Returns the attribute changes to apply. Raises ApprovalRuleError.
    """
    now = now or datetime.datetime.now()
    check_editable(approval)

    stage = payload.get('stage')
    pm_approved = payload.get('pmApproved')
    vendor_approved = payload.get('vendorApproved')
    disclaimer_accepted = payload.get('disclaimerAccepted')

    if is_vendor:
        check_vendor_access(approval, vendor_id)
        if stage is not None or pm_approved is not None:
            raise ApprovalRuleError('Vendors can only approve/retract items', status=403)
        if approval.stage != 'negotiating':
            raise ApprovalRuleError('Vendors can only approve/retract in negotiating stage')

    update = ApprovalUpdate()

    # effective flags after this request, used by the approved-stage gate
    effective_pm = bool(approval.pm_approved)
    if pm_approved is not None and not is_vendor:
        effective_pm = bool(pm_approved)
    effective_vendor = bool(approval.vendor_approved)
    if vendor_approved is not None:
        effective_vendor = bool(vendor_approved)

    if stage is not None:
        validate_stage_change(approval.stage, stage, effective_pm, effective_vendor)
        if stage != approval.stage:
            update.changes['stage'] = stage

    if pm_approved is not None and not is_vendor:
        update.changes['pm_approved'] = bool(pm_approved)

    if vendor_approved is not None:
        update.changes['vendor_approved'] = bool(vendor_approved)
        if vendor_approved and is_vendor and disclaimer_accepted is True:
            update.changes['vendor_approved_at'] = now
        elif not vendor_approved:
            update.changes['vendor_approved_at'] = None

    update.changes['updated_at'] = now
    return update


def check_can_select_items(approval) -> None:
    if approval.deleted_at is not None:
        raise ApprovalRuleError('Cannot update deleted approval')
    if approval.stage != 'draft':
        raise ApprovalRuleError('Item selection can only be changed in draft stage')


def check_can_send(approval, item_count: int) -> None:
    if approval.deleted_at is not None:
        raise ApprovalRuleError('Cannot send deleted approval')
    if approval.stage != 'draft':
        raise ApprovalRuleError('Can only send approvals from draft stage')
    if item_count == 0:
        raise ApprovalRuleError('Cannot send approval without selected items')


def check_can_edit_amounts(approval) -> None:
    check_editable(approval)
