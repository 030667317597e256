"""Bank-transfer QR issuer and transaction feed."""

import logging
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlencode

import httpx

from clinic_scheduler.core import config
from clinic_scheduler.core.errors import ExternalServiceError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IssuedPayment:
    payable_reference: str
    transaction_id: str | None = None


@dataclass(frozen=True)
class BankTransaction:
    transaction_id: str | None
    amount: int
    memo: str


class PaymentProvider:
    """Issues payable references for bank transfers.

    With an API token the payment gateway creates a dynamic QR; a gateway
    failure falls back to a static VietQR image URL. Without a receiving
    account nothing can be issued.
    """

    def __init__(
        self,
        account_number: str | None = None,
        account_name: str | None = None,
        bank_code: str | None = None,
        api_token: str | None = None,
        api_base_url: str | None = None,
        timeout: float | None = None,
    ):
        self.account_number = account_number if account_number is not None else config.PAYMENT_ACCOUNT_NUMBER
        self.account_name = account_name if account_name is not None else config.PAYMENT_ACCOUNT_NAME
        self.bank_code = bank_code or config.PAYMENT_BANK_CODE
        self.api_token = api_token if api_token is not None else config.PAYMENT_API_TOKEN
        self.api_base_url = (api_base_url or config.PAYMENT_API_BASE_URL).rstrip('/')
        self.timeout = timeout if timeout is not None else config.HTTP_TIMEOUT_SECONDS

    def _headers(self) -> dict[str, str]:
        return {'Authorization': f'Bearer {self.api_token}'}

    def qr_image_url(self, amount: int, memo: str) -> str:
        query = urlencode({'amount': amount, 'addInfo': memo, 'accountName': self.account_name})
        return (
            f'{config.PAYMENT_QR_BASE_URL}/{self.bank_code}-{self.account_number}'
            f'-{config.PAYMENT_QR_TEMPLATE}.png?{query}'
        )

    def issue(self, amount: int, memo: str, payer_label: str | None = None) -> IssuedPayment:
        if not self.account_number:
            raise ExternalServiceError('Payment account is not configured; cannot issue a payment QR.')
        if amount <= 0:
            raise ExternalServiceError('Cannot issue a payment QR for a non-positive amount.')

        if self.api_token:
            try:
                return self._issue_via_gateway(amount, memo, payer_label)
            except (httpx.HTTPError, ValueError, KeyError):
                logger.warning('Payment gateway QR creation failed; using static QR for %s', memo, exc_info=True)

        return IssuedPayment(payable_reference=self.qr_image_url(amount, memo))

    def _issue_via_gateway(self, amount: int, memo: str, payer_label: str | None) -> IssuedPayment:
        with httpx.Client(timeout=self.timeout) as client:
            response = client.post(
                f'{self.api_base_url}/create-payment',
                headers=self._headers(),
                json={
                    'account_number': self.account_number,
                    'amount': amount,
                    'content': memo,
                    'payer_name': payer_label or self.account_name,
                    'bank_code': self.bank_code,
                    'callback_url': config.PAYMENT_WEBHOOK_URL or None,
                },
            )
            response.raise_for_status()
            body = response.json()

        data = body['data']
        qr_url = data.get('qr_url') or data.get('qrcode') or data.get('qr_code')
        if not qr_url:
            raise ValueError('Gateway response carried no QR url.')
        transaction_id = data.get('transaction_id') or data.get('id')
        return IssuedPayment(payable_reference=qr_url, transaction_id=str(transaction_id) if transaction_id else None)

    def list_recent_transactions(self, limit: int = 50) -> list[BankTransaction]:
        if not self.api_token:
            return []

        try:
            with httpx.Client(timeout=self.timeout) as client:
                response = client.get(
                    f'{self.api_base_url}/transactions/list',
                    headers=self._headers(),
                    params={'account_number': self.account_number, 'limit': limit},
                )
                response.raise_for_status()
                body = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise ExternalServiceError('Could not read the payment transaction feed.') from exc

        return [parse_transaction(item) for item in _transaction_items(body)]


def _transaction_items(body: Any) -> list[dict]:
    if isinstance(body, list):
        return body
    if isinstance(body, dict):
        for key in ('transactions', 'data', 'records'):
            items = body.get(key)
            if isinstance(items, list):
                return items
            if isinstance(items, dict) and isinstance(items.get('transactions'), list):
                return items['transactions']
    return []


def parse_transaction(item: dict) -> BankTransaction:
    """Normalize one webhook or feed record into amount and memo."""
    raw_amount = item.get('amount_in') or item.get('transferAmount') or item.get('amount') or 0
    try:
        amount = int(float(raw_amount))
    except (TypeError, ValueError):
        amount = 0
    memo = item.get('transaction_content') or item.get('content') or item.get('description') or item.get('memo') or ''
    transaction_id = item.get('id') or item.get('reference_number') or item.get('referenceCode')
    return BankTransaction(
        transaction_id=str(transaction_id) if transaction_id is not None else None,
        amount=amount,
        memo=str(memo),
    )
