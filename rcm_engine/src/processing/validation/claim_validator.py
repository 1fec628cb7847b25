import re
from decimal import Decimal
from typing import List

from ...core.database.models.claims_db import ClaimModel, ClaimLineItemModel
import structlog

logger = structlog.get_logger(__name__)

PROCEDURE_CODE_PATTERN = re.compile(r"^[A-Z0-9]{5}$")
DIAGNOSIS_CODE_PATTERN = re.compile(r"^[A-Z][0-9][0-9A-Z](\.?[0-9A-Z]{1,4})?$")


class ClaimValidator:
    def validate_claim(self, claim: ClaimModel) -> List[str]:
        """
        Validates a claim before it is transmitted to the clearinghouse.
        Returns a list of error messages. An empty list means the claim is valid.
        """
        errors: List[str] = []

        if not (claim.payer_id or claim.payer_name):
            errors.append("Claim must reference a payer (payer_id or payer_name).")

        if claim.billed_amount is None or claim.billed_amount <= 0:
            errors.append(f"Billed amount ({claim.billed_amount}) must be positive.")

        if not claim.line_items:
            errors.append("Claim must have at least one line item.")
        else:
            for line_item in claim.line_items:
                errors.extend(self._validate_line_item(line_item))

            total_line_charges = sum((li.unit_price * li.quantity for li in claim.line_items), Decimal("0"))
            if claim.billed_amount is not None and total_line_charges != claim.billed_amount:
                errors.append(
                    f"Sum of line item charges ({total_line_charges}) does not match claim billed amount ({claim.billed_amount})."
                )

        if errors:
            logger.debug("Claim validation failed", claim_id=claim.id, errors=errors)
        else:
            logger.debug("Claim validation successful", claim_id=claim.id)

        return errors

    def _validate_line_item(self, line_item: ClaimLineItemModel) -> List[str]:
        line_errors: List[str] = []
        line_number = line_item.line_number

        if not line_item.procedure_code:
            line_errors.append(f"Line {line_number}: Missing procedure_code.")
        elif not PROCEDURE_CODE_PATTERN.match(line_item.procedure_code.upper()):
            line_errors.append(f"Line {line_number}: Procedure code '{line_item.procedure_code}' is malformed.")

        for code in line_item.diagnosis_codes or []:
            if not DIAGNOSIS_CODE_PATTERN.match(code.upper()):
                line_errors.append(f"Line {line_number}: Diagnosis code '{code}' is malformed.")

        if line_item.quantity <= 0:
            line_errors.append(f"Line {line_number}: Quantity ({line_item.quantity}) must be positive.")

        if line_item.unit_price < 0:
            line_errors.append(f"Line {line_number}: Unit price ({line_item.unit_price}) cannot be negative.")

        return line_errors
