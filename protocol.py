"""
Worker message protocol.

Inbound (caller -> coordinator):   start(config), cancel
Outbound (coordinator -> caller):  progress, partial_result, result, error

Messages are plain dataclasses while they travel inside the process tree
(they pickle across worker processes as-is) and become JSON-safe dicts via
to_payload() at the boundary. Decimals are written as strings so no digit
is lost; the result codec is shared with the result cache.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Union

from config import SolverConfig
from errors import ValidationError
from formula import Transaction
from solver import ResultMetadata, SolverResult

_METADATA_FIELDS = (
    "difference_percent",
    "unit_price_difference",
    "quantity_difference",
    "discount_difference",
    "base",
    "other_value_base",
)


def result_to_payload(result: SolverResult) -> Dict[str, Any]:
    tx = result.transaction
    return {
        "transaction": {
            "unit_price": str(tx.unit_price),
            "quantity": str(tx.quantity),
            "discount": str(tx.discount),
        },
        "calculated": str(result.calculated),
        "difference": str(result.difference),
        "score": str(result.score),
        "metadata": {name: str(getattr(result.metadata, name)) for name in _METADATA_FIELDS},
    }


def result_from_payload(payload: Dict[str, Any]) -> SolverResult:
    tx = payload["transaction"]
    meta = payload["metadata"]
    return SolverResult(
        transaction=Transaction(
            Decimal(tx["unit_price"]), Decimal(tx["quantity"]), Decimal(tx["discount"])
        ),
        calculated=Decimal(payload["calculated"]),
        difference=Decimal(payload["difference"]),
        score=Decimal(payload["score"]),
        metadata=ResultMetadata(**{name: Decimal(meta[name]) for name in _METADATA_FIELDS}),
    )


@dataclass
class StartRequest:
    config: SolverConfig
    type: str = field(default="start", init=False)

    def to_payload(self) -> Dict[str, Any]:
        return {"type": self.type, "config": self.config.to_payload()}


@dataclass
class CancelRequest:
    type: str = field(default="cancel", init=False)

    def to_payload(self) -> Dict[str, Any]:
        return {"type": self.type}


@dataclass
class ProgressMessage:
    progress: float
    estimate: int
    type: str = field(default="progress", init=False)

    def to_payload(self) -> Dict[str, Any]:
        return {"type": self.type, "progress": self.progress, "estimate": self.estimate}


@dataclass
class PartialResultMessage:
    results: List[SolverResult]
    type: str = field(default="partial_result", init=False)

    def to_payload(self) -> Dict[str, Any]:
        return {"type": self.type, "results": [result_to_payload(r) for r in self.results]}


@dataclass
class ResultMessage:
    results: List[SolverResult]
    elapsed: float            # milliseconds
    type: str = field(default="result", init=False)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "results": [result_to_payload(r) for r in self.results],
            "elapsed": self.elapsed,
        }


@dataclass
class ErrorMessage:
    message: str
    type: str = field(default="error", init=False)

    def to_payload(self) -> Dict[str, Any]:
        return {"type": self.type, "message": self.message}


Request = Union[StartRequest, CancelRequest]
Response = Union[ProgressMessage, PartialResultMessage, ResultMessage, ErrorMessage]


def request_from_payload(payload: Dict[str, Any]) -> Request:
    kind = payload.get("type")
    if kind == "start":
        return StartRequest(SolverConfig.from_payload(payload.get("config") or {}))
    if kind == "cancel":
        return CancelRequest()
    raise ValidationError(f"unknown request type: {kind!r}")


def response_from_payload(payload: Dict[str, Any]) -> Response:
    kind = payload.get("type")
    if kind == "progress":
        return ProgressMessage(float(payload["progress"]), int(payload["estimate"]))
    if kind == "partial_result":
        return PartialResultMessage([result_from_payload(r) for r in payload["results"]])
    if kind == "result":
        return ResultMessage(
            [result_from_payload(r) for r in payload["results"]], float(payload["elapsed"])
        )
    if kind == "error":
        return ErrorMessage(str(payload["message"]))
    raise ValueError(f"unknown response type: {kind!r}")
