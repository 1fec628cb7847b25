"""
Translation of clearinghouse remittance files into RemittanceAdviceCommand.

Supports the X12 835 segments the engine needs:

    ISA  interchange header (element separator is its 4th character)
    BPR  payment amount (BPR02) and payment date (BPR16)
    TRN  check/EFT trace number (TRN02), used as the batch id
    N1   payer identification when N101 == "PR"
    CLP  claim payment: reference, status code, charge, paid, patient responsibility
    CAS  adjustments; attach to the preceding SVC when inside a service loop
    SVC  service line payment
"""
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Union
import hashlib
import re

import structlog
from pydantic import ValidationError as PydanticValidationError

from ...api.models.remittance_models import RemittanceAdviceCommand
from ...core.exceptions import ValidationError

logger = structlog.get_logger(__name__)

ZERO = Decimal("0")


def _amount(value: Optional[str]) -> Decimal:
    if value is None or value == "":
        return ZERO
    try:
        return Decimal(value).quantize(Decimal("0.01"))
    except InvalidOperation:
        raise ValidationError(f"Invalid monetary amount in ERA: '{value}'")


def _split_segments(content: str):
    text = content.strip()
    element_sep = "*"
    if text.startswith("ISA") and len(text) > 3:
        element_sep = text[3]
    raw_segments = re.split(r"~\s*|\r?\n", text)
    return [seg.strip().split(element_sep) for seg in raw_segments if seg.strip()], element_sep


def _parse_cas(elements: List[str]) -> List[Dict[str, Any]]:
    group_code = elements[1] if len(elements) > 1 else ""
    adjustments = []
    # Up to six (reason, amount, quantity) triplets follow the group code
    for index in range(2, len(elements), 3):
        reason = elements[index] if index < len(elements) else ""
        amount = elements[index + 1] if index + 1 < len(elements) else ""
        if not reason:
            continue
        adjustments.append({"group_code": group_code, "reason_code": reason, "amount": _amount(amount)})
    return adjustments


def _parse_date(value: str) -> Optional[datetime]:
    try:
        return datetime.strptime(value, "%Y%m%d").replace(tzinfo=timezone.utc)
    except (TypeError, ValueError):
        return None


def parse_x12_835(content: str, batch_id: Optional[str] = None) -> RemittanceAdviceCommand:
    segments, _ = _split_segments(content)
    if not segments:
        raise ValidationError("ERA content is empty.")

    header: Dict[str, Any] = {"payment_amount": ZERO}
    records: List[Dict[str, Any]] = []
    current_claim: Optional[Dict[str, Any]] = None
    current_line: Optional[Dict[str, Any]] = None

    for elements in segments:
        seg_id = elements[0].upper()

        if seg_id == "BPR":
            header["payment_amount"] = _amount(elements[2] if len(elements) > 2 else None)
            if len(elements) > 16:
                header["payment_date"] = _parse_date(elements[16])
        elif seg_id == "TRN" and len(elements) > 2:
            header.setdefault("trace_number", elements[2])
        elif seg_id == "N1" and len(elements) > 2 and elements[1] == "PR":
            header["payer_name"] = elements[2]
            if len(elements) > 4:
                header["payer_id"] = elements[4]
        elif seg_id == "CLP":
            if len(elements) < 5:
                raise ValidationError(f"Malformed CLP segment: {'*'.join(elements)}")
            current_claim = {
                "claim_reference": elements[1],
                "status_code": elements[2],
                "billed_amount": _amount(elements[3]),
                "paid_amount": _amount(elements[4]),
                "patient_responsibility": _amount(elements[5] if len(elements) > 5 else None),
                "adjustments": [],
                "line_adjustments": [],
            }
            current_line = None
            records.append(current_claim)
        elif seg_id == "SVC" and current_claim is not None:
            procedure = elements[1].split(":")[-1] if len(elements) > 1 else None
            current_line = {
                "line_number": len(current_claim["line_adjustments"]) + 1,
                "procedure_code": procedure,
                "billed_amount": _amount(elements[2] if len(elements) > 2 else None),
                "paid_amount": _amount(elements[3] if len(elements) > 3 else None),
                "adjustments": [],
            }
            current_claim["line_adjustments"].append(current_line)
        elif seg_id == "CAS" and current_claim is not None:
            target = current_line if current_line is not None else current_claim
            target["adjustments"].extend(_parse_cas(elements))
        elif seg_id in ("SE", "GE", "IEA"):
            current_line = None

    for record in records:
        record["allowed_amount"] = _allowed_amount(record)

    resolved_batch_id = batch_id or header.get("trace_number")
    if not resolved_batch_id:
        # No trace number: derive a stable id from the content so re-ingestion stays idempotent
        resolved_batch_id = "ERA-" + hashlib.sha256(content.encode("utf-8")).hexdigest()[:24]

    logger.debug("Parsed X12 835", batch_id=resolved_batch_id, claim_records=len(records))

    return _build_command({
        "batch_id": resolved_batch_id,
        "payer_name": header.get("payer_name"),
        "payer_id": header.get("payer_id"),
        "payment_amount": header["payment_amount"],
        "payment_date": header.get("payment_date"),
        "records": records,
    })


def _allowed_amount(record: Dict[str, Any]) -> Decimal:
    """Charge less contractual (CO) adjustments, at claim and service-line level."""
    contractual = sum(
        (adj["amount"] for adj in record["adjustments"] if adj["group_code"] == "CO"), ZERO
    )
    for line in record["line_adjustments"]:
        contractual += sum((adj["amount"] for adj in line["adjustments"] if adj["group_code"] == "CO"), ZERO)
    return max(record["billed_amount"] - contractual, ZERO)


def _build_command(data: Dict[str, Any]) -> RemittanceAdviceCommand:
    try:
        return RemittanceAdviceCommand.model_validate(data)
    except PydanticValidationError as e:
        raise ValidationError("ERA content failed validation.", [err["msg"] for err in e.errors()])


def parse_era(content: Union[str, Dict[str, Any]], batch_id: Optional[str] = None) -> RemittanceAdviceCommand:
    """Accepts raw 835 text or the clearinghouse's JSON remittance body."""
    if isinstance(content, dict):
        data = dict(content)
        if batch_id:
            data["batch_id"] = batch_id
        return _build_command(data)
    return parse_x12_835(content, batch_id=batch_id)
