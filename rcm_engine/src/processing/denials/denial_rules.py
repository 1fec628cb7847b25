"""
Static denial knowledge: reason-code categorization, priority and the ordered
remediation plan per category. Everything here is pure and deterministic.
"""
import re
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from ...api.models.denial_models import ResolutionAction

ELIGIBILITY = "eligibility"
CODING_DOCUMENTATION = "coding_documentation"
AUTHORIZATION = "authorization"
TIMELY_FILING = "timely_filing"
BUNDLING = "bundling"
OTHER = "other"

CATEGORIES = (ELIGIBILITY, CODING_DOCUMENTATION, AUTHORIZATION, TIMELY_FILING, BUNDLING, OTHER)

# Exact CARC matches
REASON_CODE_RULES: Dict[str, str] = {
    # Coverage and eligibility
    "22": ELIGIBILITY, "24": ELIGIBILITY, "26": ELIGIBILITY, "27": ELIGIBILITY,
    "31": ELIGIBILITY, "32": ELIGIBILITY, "33": ELIGIBILITY, "96": ELIGIBILITY,
    "109": ELIGIBILITY, "177": ELIGIBILITY, "200": ELIGIBILITY, "204": ELIGIBILITY,
    # Coding and documentation
    "4": CODING_DOCUMENTATION, "5": CODING_DOCUMENTATION, "6": CODING_DOCUMENTATION,
    "7": CODING_DOCUMENTATION, "8": CODING_DOCUMENTATION, "9": CODING_DOCUMENTATION,
    "11": CODING_DOCUMENTATION, "16": CODING_DOCUMENTATION, "50": CODING_DOCUMENTATION,
    "56": CODING_DOCUMENTATION, "146": CODING_DOCUMENTATION, "167": CODING_DOCUMENTATION,
    "181": CODING_DOCUMENTATION, "182": CODING_DOCUMENTATION, "236": CODING_DOCUMENTATION,
    "252": CODING_DOCUMENTATION,
    # Authorization and referral
    "15": AUTHORIZATION, "39": AUTHORIZATION, "62": AUTHORIZATION,
    "197": AUTHORIZATION, "198": AUTHORIZATION, "288": AUTHORIZATION,
    # Filing limits
    "29": TIMELY_FILING,
    # Bundling and NCCI edits
    "97": BUNDLING, "231": BUNDLING, "234": BUNDLING, "B15": BUNDLING,
}

# Alphabetic prefixes of remark-style codes, longest match wins
REASON_PREFIX_RULES: Dict[str, str] = {
    "MA": CODING_DOCUMENTATION,
    "M": CODING_DOCUMENTATION,
    "N": CODING_DOCUMENTATION,
}

GROUP_CODES = ("CO", "PR", "OA", "PI", "CR")
_GROUP_PATTERN = re.compile(r"^(CO|PR|OA|PI|CR)[-\s]?(.+)$")

# Fee-schedule, negotiated-discount and sequestration write-downs. The payer
# adjusts these by contract, so they never open a denial.
CONTRACTUAL_REASON_CODES = frozenset({"42", "44", "45", "131", "253"})

PRIORITY_HIGH_AMOUNT = Decimal("1000")
PRIORITY_MEDIUM_AMOUNT = Decimal("250")


def normalize_reason_code(raw_code: str, group_code: Optional[str] = None) -> Tuple[Optional[str], str]:
    """
    Splits "CO-27", "CO27" or "27" into (group_code, carc). Leading zeros are dropped.
    """
    code = (raw_code or "").strip().upper()
    match = _GROUP_PATTERN.match(code)
    if match:
        group_code = group_code or match.group(1)
        code = match.group(2).strip()
    if code.isdigit():
        code = str(int(code))
    return (group_code.upper() if group_code else None), code


def categorize_reason_code(raw_code: str) -> str:
    _, code = normalize_reason_code(raw_code)
    if code in REASON_CODE_RULES:
        return REASON_CODE_RULES[code]
    for length in range(len(code), 0, -1):
        prefix = code[:length]
        if prefix.isalpha() and prefix in REASON_PREFIX_RULES:
            return REASON_PREFIX_RULES[prefix]
    return OTHER


def denial_priority(category: str, denied_amount: Decimal) -> str:
    if category == TIMELY_FILING or denied_amount >= PRIORITY_HIGH_AMOUNT:
        return "high"
    if denied_amount >= PRIORITY_MEDIUM_AMOUNT or category == AUTHORIZATION:
        return "medium"
    return "low"


def _action(action: str, description: str, documents: List[str], steps: List[str], days: int) -> ResolutionAction:
    return ResolutionAction(
        action=action, description=description, required_documents=documents, steps=steps, estimated_days=days
    )


RESOLUTION_ACTIONS: Dict[str, Tuple[ResolutionAction, ...]] = {
    ELIGIBILITY: (
        _action("verify_coverage", "Verify the patient's coverage on the date of service",
                ["Insurance card", "Eligibility response (271)"],
                ["Run a real-time eligibility check", "Confirm member id and plan dates"], 1),
        _action("correct_and_resubmit", "Correct subscriber or payer data and resubmit",
                ["Corrected claim form"],
                ["Update demographics and payer", "Resubmit as a corrected claim"], 5),
        _action("bill_other_party", "Bill the responsible secondary payer or the patient",
                ["Coordination of benefits information"],
                ["Identify the primary payer", "Transfer the balance to the responsible party"], 10),
    ),
    CODING_DOCUMENTATION: (
        _action("review_coding", "Review procedure, diagnosis and modifier coding against the record",
                ["Medical records", "Coding guidelines"],
                ["Compare billed codes with documentation", "Check code validity for the date of service"], 3),
        _action("correct_and_resubmit", "Submit a corrected claim with the right codes",
                ["Corrected claim form"],
                ["Fix the coding error", "Resubmit within the corrected-claim window"], 7),
        _action("appeal_with_records", "Appeal with supporting clinical documentation",
                ["Medical records", "Physician notes", "Letter of medical necessity"],
                ["Assemble clinical documentation", "File the appeal letter"], 30),
    ),
    AUTHORIZATION: (
        _action("check_authorization", "Confirm whether an authorization or referral was on file",
                ["Authorization number", "Referral form"],
                ["Search the authorization log", "Contact the ordering provider"], 2),
        _action("request_retro_authorization", "Request retroactive authorization from the payer",
                ["Clinical summary", "Medical records"],
                ["Submit the retro-authorization request", "Track the payer decision"], 14),
        _action("appeal_with_authorization", "Appeal with the authorization documentation",
                ["Authorization approval", "Medical records"],
                ["Attach the approval", "File the appeal letter"], 30),
    ),
    TIMELY_FILING: (
        _action("gather_filing_proof", "Gather proof of timely filing",
                ["Clearinghouse acceptance report", "Original submission confirmation"],
                ["Pull the clearinghouse acknowledgement", "Confirm the original submission date"], 2),
        _action("appeal_with_proof", "Appeal with the proof of timely filing",
                ["Clearinghouse acceptance report"],
                ["File the appeal letter with the acknowledgement attached"], 30),
        _action("write_off", "Write off the balance when no proof exists", [],
                ["Document the root cause", "Post the adjustment"], 1),
    ),
    BUNDLING: (
        _action("review_edits", "Review NCCI edits for the billed code pair",
                ["NCCI edit table", "Operative report"],
                ["Identify the column 1 and column 2 codes", "Check modifier indicators"], 2),
        _action("apply_modifier", "Resubmit with a supported distinct-service modifier",
                ["Medical records"],
                ["Append modifier 59 or XE/XS/XP/XU when documented", "Resubmit the corrected claim"], 7),
        _action("appeal_separate_service", "Appeal showing the service was separate and distinct",
                ["Operative report", "Medical records"],
                ["Document the distinct session or site", "File the appeal letter"], 30),
    ),
    OTHER: (
        _action("review_remittance", "Review the remittance detail and remark codes",
                ["Remittance advice (835)"],
                ["Read the adjustment and remark codes", "Identify the root cause"], 2),
        _action("contact_payer", "Contact the payer for clarification",
                ["Claim copy"],
                ["Call provider services", "Record the reference number"], 5),
    ),
}


def resolution_actions(category: str) -> List[ResolutionAction]:
    return list(RESOLUTION_ACTIONS.get(category, RESOLUTION_ACTIONS[OTHER]))


def is_contractual_adjustment(raw_code: str) -> bool:
    _, code = normalize_reason_code(raw_code)
    return code in CONTRACTUAL_REASON_CODES
