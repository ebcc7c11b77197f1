"""Structured error types for the analysis pipeline.

Every failure surfaced to a caller carries a stable code, a user-facing message and a
retry hint. Degraded-but-successful conditions are never errors; they travel as
quality flags on the result instead.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional


class ErrorCode(str, Enum):
    NO_FRAMES = "NO_FRAMES"
    INVALID_INPUT = "INVALID_INPUT"
    ANALYSIS_TIMEOUT = "ANALYSIS_TIMEOUT"
    INVALID_API_KEY = "INVALID_API_KEY"
    RATE_LIMITED = "RATE_LIMITED"
    UPSTREAM_UNAVAILABLE = "UPSTREAM_UNAVAILABLE"
    PASS1_FAILED = "PASS1_FAILED"
    PASS2_FAILED = "PASS2_FAILED"
    ANALYSIS_ERROR = "ANALYSIS_ERROR"


# code -> (user message, can retry, http status)
_ERROR_TABLE: Dict[ErrorCode, tuple[str, bool, int]] = {
    ErrorCode.NO_FRAMES: (
        "No video frames were provided. Please select a video and try again.",
        False,
        400,
    ),
    ErrorCode.INVALID_INPUT: (
        "The analysis request was malformed. Please check the match details and try again.",
        False,
        400,
    ),
    ErrorCode.ANALYSIS_TIMEOUT: (
        "Analysis took too long. Try a shorter video clip (under 7 minutes) for best results.",
        True,
        504,
    ),
    ErrorCode.INVALID_API_KEY: (
        "Video analysis is temporarily unavailable. Our team has been notified.",
        False,
        401,
    ),
    ErrorCode.RATE_LIMITED: (
        "The analysis service is busy right now. Please retry in a minute.",
        True,
        429,
    ),
    ErrorCode.UPSTREAM_UNAVAILABLE: (
        "The analysis service could not be reached. Please try again shortly.",
        True,
        503,
    ),
    ErrorCode.PASS1_FAILED: (
        "We could not observe the video frames clearly. Please try a video with better lighting and a clearer angle.",
        True,
        502,
    ),
    ErrorCode.PASS2_FAILED: (
        "We could not complete the scoring analysis. Please try again.",
        True,
        502,
    ),
    ErrorCode.ANALYSIS_ERROR: (
        "We were unable to analyze this video. Please try again or upload a different video.",
        True,
        500,
    ),
}


class AnalysisError(Exception):
    """Raised for any failure that ends an analysis run."""

    def __init__(
        self,
        code: ErrorCode | str,
        detail: Optional[str] = None,
        reasons: Optional[List[str]] = None,
    ):
        self.code = ErrorCode(code)
        self.detail = detail or self.code.value
        self.reasons = list(reasons or [])
        super().__init__(self.detail)

    @property
    def user_message(self) -> str:
        return _ERROR_TABLE[self.code][0]

    @property
    def can_retry(self) -> bool:
        return _ERROR_TABLE[self.code][1]

    @property
    def http_status(self) -> int:
        return _ERROR_TABLE[self.code][2]

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "status": "analysis_failed",
            "code": self.code.value,
            "error": self.detail,
            "user_message": self.user_message,
            "can_retry": self.can_retry,
        }
        if self.reasons:
            payload["reasons"] = list(self.reasons)
        return payload


def build_analysis_error(
    code: ErrorCode | str,
    detail: Optional[str] = None,
    reasons: Optional[List[str]] = None,
) -> Dict[str, Any]:
    """Return the structured error document for ``code``."""

    return AnalysisError(code, detail, reasons).to_payload()
