"""Error taxonomy for the metrics and community ranking services."""

from __future__ import annotations

from dataclasses import dataclass

from fastapi import HTTPException


@dataclass(frozen=True)
class MetricsError(Exception):
    code: str
    detail: str
    status_code: int = 400
    retryable: bool = False

    def __str__(self) -> str:
        return self.detail

    def to_http_exception(self) -> HTTPException:
        return HTTPException(status_code=self.status_code, detail=self.detail)


class MetricsNotFoundError(MetricsError):
    def __init__(self, code: str, detail: str):
        super().__init__(code=code, detail=detail, status_code=404, retryable=False)


class MetricsPersistenceError(MetricsError):
    def __init__(self, code: str, detail: str):
        super().__init__(code=code, detail=detail, status_code=500, retryable=True)


class UnsupportedPeriodError(ValueError):
    pass


def as_http_exception(exc: Exception) -> HTTPException:
    if isinstance(exc, MetricsError):
        return exc.to_http_exception()
    if isinstance(exc, UnsupportedPeriodError):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, HTTPException):
        return exc
    return HTTPException(status_code=500, detail=str(exc) or "Metrics error")
