"""
Processor Error Codes

Catalog of payment processor error codes (9XX for EFT, RXX for ACH returns).
Admin screens show the raw code verbatim next to the description found here.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional


class ErrorCategory(Enum):
    """Where a processor error originates"""
    BANK = "bank"
    VALIDATION = "validation"
    SYSTEM = "system"
    AUTHORIZATION = "authorization"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class ErrorCodeInfo:
    """Description of a processor error code"""
    code: str
    message: str
    category: ErrorCategory
    retryable: bool  # Whether staff may reasonably re-initiate


_BANK = ErrorCategory.BANK
_VALIDATION = ErrorCategory.VALIDATION
_SYSTEM = ErrorCategory.SYSTEM
_AUTH = ErrorCategory.AUTHORIZATION

# Recorded on transactions voided at the processor
VOIDED_ERROR_CODE = "VOIDED"

_CATALOG = [
    # EFT (9XX)
    ("900", "Invalid account number", _VALIDATION, False),
    ("901", "Invalid transit number", _VALIDATION, False),
    ("902", "Invalid institution number", _VALIDATION, False),
    ("903", "Account closed", _BANK, False),
    ("904", "Insufficient funds", _BANK, True),
    ("905", "Payment stopped", _BANK, False),
    ("906", "Invalid account type", _VALIDATION, False),
    ("907", "Account frozen", _BANK, False),
    ("908", "Invalid amount", _VALIDATION, False),
    ("909", "Transaction not authorized", _AUTH, False),
    ("910", "Account does not exist", _BANK, False),
    ("911", "Invalid date", _VALIDATION, False),
    ("912", "Transaction limit exceeded", _BANK, False),
    ("913", "Daily limit exceeded", _BANK, True),
    ("914", "Monthly limit exceeded", _BANK, True),
    ("915", "Bank processing error", _SYSTEM, True),
    ("916", "Bank system unavailable", _SYSTEM, True),
    ("917", "Duplicate transaction", _VALIDATION, False),
    ("918", "Invalid customer", _VALIDATION, False),
    ("919", "Transaction expired", _VALIDATION, False),
    ("920", "Invalid payment type", _VALIDATION, False),

    # ACH returns (RXX)
    ("R01", "Insufficient funds", _BANK, True),
    ("R02", "Account closed", _BANK, False),
    ("R03", "No account / Unable to locate account", _BANK, False),
    ("R04", "Invalid account number", _VALIDATION, False),
    ("R05", "Unauthorized debit to consumer account", _AUTH, False),
    ("R06", "Returned per ODFI request", _BANK, False),
    ("R07", "Authorization revoked by customer", _AUTH, False),
    ("R08", "Payment stopped", _BANK, False),
    ("R09", "Uncollected funds", _BANK, True),
    ("R10", "Customer advises not authorized", _AUTH, False),
    ("R11", "Check truncation entry return", _BANK, False),
    ("R12", "Branch sold to another DFI", _BANK, False),
    ("R13", "RDFI not qualified to participate", _BANK, False),
    ("R14", "Representative payee deceased or unable to continue", _BANK, False),
    ("R15", "Beneficiary or account holder deceased", _BANK, False),
    ("R16", "Account frozen", _BANK, False),
    ("R17", "File record edit criteria", _VALIDATION, False),
    ("R18", "Improper effective entry date", _VALIDATION, False),
    ("R19", "Amount field error", _VALIDATION, False),
    ("R20", "Non-transaction account", _BANK, False),
    ("R21", "Invalid company identification", _VALIDATION, False),
    ("R22", "Invalid individual ID number", _VALIDATION, False),
    ("R23", "Credit entry refused by receiver", _BANK, False),
    ("R24", "Duplicate entry", _VALIDATION, False),
    ("R29", "Corporate customer advises not authorized", _AUTH, False),

    # Symbolic codes raised by processors and by local voids
    ("INSUFFICIENT_FUNDS", "Insufficient funds", _BANK, True),
    (VOIDED_ERROR_CODE, "Transaction voided at the processor", _SYSTEM, False),
]

ERROR_CODES: Dict[str, ErrorCodeInfo] = {
    code: ErrorCodeInfo(code=code, message=message, category=category, retryable=retryable)
    for code, message, category, retryable in _CATALOG
}


def get_error_info(code: Optional[str]) -> Optional[ErrorCodeInfo]:
    """Catalog entry for a code, or None when the code is unknown"""
    if not code:
        return None
    return ERROR_CODES.get(code.strip().upper())


def describe_error(code: Optional[str]) -> ErrorCodeInfo:
    """
    Describe a processor error code, falling back to a generic entry

    Unknown codes keep their raw value so nothing is masked.
    """
    info = get_error_info(code)
    if info:
        return info

    if not code:
        return ErrorCodeInfo(code="", message="Unknown error",
                             category=ErrorCategory.UNKNOWN, retryable=False)

    raw = code.strip()
    if raw.startswith("9"):
        message = f"EFT error: {raw}"
    elif raw.upper().startswith("R"):
        message = f"ACH error: {raw}"
    else:
        message = f"Error code: {raw}"
    return ErrorCodeInfo(code=raw, message=message, category=ErrorCategory.UNKNOWN, retryable=False)
