"""
Client for the ledger gateway that distributes tokens on-chain.

The gateway accepts one batch per user wallet and returns a transaction
reference which is later polled for finality.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

import requests

from ..core.config import settings
from ..core.errors import LedgerPollError, LedgerSubmissionError


logger = logging.getLogger("ledger")


@dataclass
class BatchEntry:
    wallet: str
    miles: str
    amount: str
    proof_types: list
    proof_values: list
    impact_codes: list
    impact_values: list
    description: str = ""

    def as_payload(self) -> dict:
        return {
            "wallet": self.wallet,
            "miles": self.miles,
            "amount": self.amount,
            "proofTypes": list(self.proof_types),
            "proofValues": [str(v) for v in self.proof_values],
            "impactCodes": list(self.impact_codes),
            "impactValues": [str(v) for v in self.impact_values],
            "description": self.description,
        }


@dataclass
class LedgerSubmission:
    tx_ref: str
    total_distributed: str
    batch_count: int
    user_count: int


@dataclass
class TransactionStatus:
    confirmed: bool
    reverted: bool
    block_number: Optional[int] = None
    gas_used: Optional[int] = None


class LedgerClient:
    name = "base"

    def submit_batch(self, entries: list[BatchEntry]) -> LedgerSubmission:
        raise NotImplementedError

    def get_transaction_status(self, tx_ref: str) -> TransactionStatus:
        raise NotImplementedError


class LedgerUnavailableClient(LedgerClient):
    name = "unavailable"

    def __init__(self, reason: str):
        self.reason = reason

    def submit_batch(self, entries: list[BatchEntry]) -> LedgerSubmission:
        raise LedgerSubmissionError(f"Ledger unavailable: {self.reason}")

    def get_transaction_status(self, tx_ref: str) -> TransactionStatus:
        raise LedgerPollError(f"Ledger unavailable: {self.reason}")


def _error_detail(response: requests.Response) -> str:
    detail = response.text
    try:
        body = response.json()
    except Exception:
        return detail
    if isinstance(body, dict):
        error_obj = body.get("error")
        if isinstance(error_obj, dict):
            return str(error_obj.get("message") or detail)
        if isinstance(error_obj, str):
            return error_obj
    return detail


class HttpLedgerClient(LedgerClient):
    name = "http"

    def __init__(self, base_url: str, token: str | None = None, timeout_sec: int = 20, session: requests.Session | None = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = (5, timeout_sec)
        self.session = session or requests.Session()
        self.headers = {"Content-Type": "application/json"}
        if token:
            self.headers["Authorization"] = f"Bearer {token}"

    def submit_batch(self, entries: list[BatchEntry]) -> LedgerSubmission:
        if not entries:
            raise LedgerSubmissionError("Refusing to submit an empty batch")
        url = f"{self.base_url}/batches"
        payload = {"entries": [entry.as_payload() for entry in entries]}
        try:
            response = self.session.post(url, headers=self.headers, json=payload, timeout=self.timeout)
        except requests.RequestException as exc:
            raise LedgerSubmissionError(f"Ledger batch request failed: {exc}") from exc
        if response.status_code // 100 != 2:
            raise LedgerSubmissionError(
                f"Ledger batch rejected status={response.status_code} detail={_error_detail(response)}",
                context={"status_code": response.status_code},
            )
        try:
            data = response.json()
        except Exception as exc:
            raise LedgerSubmissionError(f"Ledger batch accepted but response was not JSON: {exc}") from exc
        if not isinstance(data, dict):
            raise LedgerSubmissionError("Ledger batch response is not an object")
        tx_ref = data.get("txRef") or data.get("txId")
        if not tx_ref:
            raise LedgerSubmissionError("Ledger batch response has no transaction reference")
        return LedgerSubmission(
            tx_ref=str(tx_ref),
            total_distributed=str(data.get("totalDistributed") or "0"),
            batch_count=int(data.get("batchCount") or len(entries)),
            user_count=int(data.get("userCount") or 1),
        )

    def get_transaction_status(self, tx_ref: str) -> TransactionStatus:
        url = f"{self.base_url}/transactions/{tx_ref}"
        try:
            response = self.session.get(url, headers=self.headers, timeout=self.timeout)
        except requests.RequestException as exc:
            raise LedgerPollError(f"Ledger status request failed: {exc}") from exc
        if response.status_code == 404:
            return TransactionStatus(confirmed=False, reverted=False)
        if response.status_code // 100 != 2:
            raise LedgerPollError(f"Ledger status failed status={response.status_code} detail={_error_detail(response)}")
        try:
            data = response.json()
        except Exception as exc:
            raise LedgerPollError(f"Ledger status response was not JSON: {exc}") from exc
        return TransactionStatus(
            confirmed=bool(data.get("confirmed")),
            reverted=bool(data.get("reverted")),
            block_number=data.get("blockNumber"),
            gas_used=data.get("gasUsed"),
        )


def build_ledger_client() -> LedgerClient:
    if not settings.ledger_api_url:
        logger.warning("LEDGER_API_URL not set; distribution will fail until configured")
        return LedgerUnavailableClient("LEDGER_API_URL not set")
    logger.info("Ledger client selected: http url=%s", settings.ledger_api_url)
    return HttpLedgerClient(settings.ledger_api_url, settings.ledger_api_token, settings.ledger_timeout_sec)
