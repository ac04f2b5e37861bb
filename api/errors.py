"""
Standardized error responses for the Stake Ledger API.

All API errors should use these functions to ensure consistent response format:

    {"success": false, "error": {"code": "STATE_002", "message": "...", "details": {...}}}
"""

from typing import Any, Dict, Optional

from fastapi.responses import JSONResponse

from stakeledger.errors import StakingLedgerError


# Error codes by category
ERROR_CODES = {
    # Validation errors
    "VAL_001": "Invalid request",
    "VAL_404": "Not found",

    # Ledger state errors
    "STATE_001": "Operation conflicts with ledger state",
    "STATE_002": "Position is still locked",
    "STATE_003": "Position already closed",
    "STATE_004": "Tier is not active",
    "STATE_005": "No rewards to claim",
    "STATE_006": "Insufficient reward funds",
    "STATE_010": "Staking is paused",

    # Authorization errors
    "AUTHZ_001": "Not authorized",

    # Collaborator errors
    "EXT_001": "Token transfer failed",

    # System errors
    "SYS_001": "Internal error",
    "SYS_002": "Service unavailable",
    "SYS_003": "Internal server error",
    "SYS_004": "Ledger store write failed",
    "CFG_001": "Configuration error",
}


def make_error_response(
    error_code: str,
    message: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Create a standardized error response dict.

    Args:
        error_code: Error code from ERROR_CODES
        message: Custom error message (uses default if not provided)
        details: Additional error details

    Returns:
        Standardized error response dict
    """
    default_message = ERROR_CODES.get(error_code, "Unknown error")

    response = {
        "success": False,
        "error": {
            "code": error_code,
            "message": message or default_message,
        }
    }

    if details:
        response["error"]["details"] = details

    return response


def fastapi_error(
    error_code: str,
    message: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
    http_status: int = 400
) -> JSONResponse:
    """Create a FastAPI JSON error response."""
    response = make_error_response(error_code, message, details)
    return JSONResponse(content=response, status_code=http_status)


def ledger_error(exc: StakingLedgerError) -> JSONResponse:
    """Render a ledger error with its own code and HTTP status."""
    return fastapi_error(exc.code, exc.message, exc.details, http_status=exc.status_code)
