"""
Three-phase top-up creation: validate -> pre-create -> create.

- validate:   input checks and a preview of the gateway request; no side effects.
- pre-create: persist a waiting_payment record holding the exact gateway
              request, before any network call.
- create:     submit the stored request and attach the gateway resource.
              Retrying is safe: the gateway deduplicates on our reference and
              a duplicate resolves to the same resource.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from topup.core.config import settings
from topup.core.exceptions import (
    DuplicateInvoiceError,
    GatewayError,
    InvalidStateTransitionError,
    NotFoundError,
    TopupValidationError,
)
from topup.core.logging import audit_logger, get_logger
from topup.models.base import utc_now
from topup.models.billing import BillingRecord, BillingStatus, PaymentMethod
from topup.models.user import UserAccount
from topup.schemas.payment import CreatePaymentRequest, TopupRequest
from topup.services.gateway_service import AlreadyExists, BaseGatewayClient, GatewayResource
from topup.storage.balance_store import UserBalanceStore
from topup.storage.billing_store import BillingRecordStore
from topup.utils.invoice_ids import new_external_id, new_invoice_id

logger = get_logger(__name__)

_ID_ATTEMPTS = 3


@dataclass(frozen=True)
class ValidatedTopup:
    user: UserAccount
    amount: int
    currency: str
    payment_method: PaymentMethod
    bank: Optional[str]

    @property
    def user_id(self) -> str:
        return self.user.id


@dataclass(frozen=True)
class TopupPreview:
    topup: ValidatedTopup
    gateway_request: dict


@dataclass(frozen=True)
class CreateResult:
    record: BillingRecord
    resource: GatewayResource
    already_existed: bool


class PaymentOrchestrator:
    def __init__(
        self,
        session: AsyncSession,
        gateway: BaseGatewayClient,
        *,
        min_amount: Optional[int] = None,
        banks: Optional[Iterable[str]] = None,
    ):
        self.records = BillingRecordStore(session)
        self.users = UserBalanceStore(session)
        self.gateway = gateway
        self.min_amount = int(min_amount if min_amount is not None else settings.BILLING_MIN_AMOUNT)
        self.banks = frozenset(b.lower() for b in (banks if banks is not None else settings.BILLING_BANKS))

    # ------------------------------------------------------------------ validation
    async def _validate(self, request: TopupRequest) -> ValidatedTopup:
        user_id = str(request.user_id or "").strip()
        if not user_id:
            raise TopupValidationError("userId is required", code="USER_ID_REQUIRED", extra={"field": "userId"})

        amount = request.amount
        if amount is None or isinstance(amount, bool) or not isinstance(amount, int):
            raise TopupValidationError(
                "amount must be an integer", code="AMOUNT_INVALID", extra={"field": "amount"}
            )
        if amount < self.min_amount:
            raise TopupValidationError(
                f"Minimum amount is {self.min_amount} {settings.BILLING_CURRENCY}",
                code="AMOUNT_TOO_LOW",
                extra={"field": "amount", "min_amount": self.min_amount, "amount": amount},
            )

        raw_method = str(request.payment_method or "").strip().lower()
        try:
            method = PaymentMethod(raw_method)
        except ValueError:
            raise TopupValidationError(
                "paymentMethod must be one of: qris, va",
                code="PAYMENT_METHOD_INVALID",
                extra={"field": "paymentMethod", "value": request.payment_method},
            ) from None

        bank = str(request.bank or "").strip().lower() or None
        if method is PaymentMethod.VA:
            if not bank:
                raise TopupValidationError(
                    "Bank is required for Virtual Account payments",
                    code="BANK_REQUIRED",
                    extra={"field": "bank"},
                )
            if bank not in self.banks:
                raise TopupValidationError(
                    f"Unsupported bank: {bank}",
                    code="BANK_UNSUPPORTED",
                    extra={"field": "bank", "allowed": sorted(self.banks)},
                )
        else:
            # bank present iff va
            bank = None

        user = await self.users.get(user_id)
        if user is None:
            raise NotFoundError(f"User {user_id} not found", code="USER_NOT_FOUND", extra={"user_id": user_id})

        return ValidatedTopup(
            user=user,
            amount=amount,
            currency=settings.BILLING_CURRENCY,
            payment_method=method,
            bank=bank,
        )

    def _gateway_request(self, topup: ValidatedTopup, external_id: str, now: datetime) -> dict:
        if topup.payment_method is PaymentMethod.QRIS:
            return self.gateway.build_qr_request(external_id, topup.amount, now)
        return self.gateway.build_virtual_account_request(
            external_id, topup.amount, topup.bank, topup.user.name, now
        )

    def _expires_at(self, topup: ValidatedTopup, now: datetime) -> datetime:
        if topup.payment_method is PaymentMethod.QRIS:
            return now + self.gateway.qr_expiry
        return now + self.gateway.va_expiry

    # ------------------------------------------------------------------ phases
    async def validate(self, request: TopupRequest) -> TopupPreview:
        """Dry run. The previewed reference is illustrative; pre-create assigns the real one."""
        topup = await self._validate(request)
        preview = self._gateway_request(topup, new_external_id(topup.user_id), utc_now())
        return TopupPreview(topup=topup, gateway_request=preview)

    async def pre_create(self, request: TopupRequest) -> BillingRecord:
        topup = await self._validate(request)

        for attempt in range(1, _ID_ATTEMPTS + 1):
            now = utc_now()
            external_id = new_external_id(topup.user_id)
            record = BillingRecord(
                invoice_id=new_invoice_id(),
                external_id=external_id,
                user_id=topup.user_id,
                amount=topup.amount,
                currency=topup.currency,
                payment_method=topup.payment_method.value,
                bank=topup.bank,
                status=BillingStatus.WAITING_PAYMENT.value,
                gateway_request=self._gateway_request(topup, external_id, now),
                expires_at=self._expires_at(topup, now),
            )
            try:
                await self.records.create(record)
                break
            except DuplicateInvoiceError:
                logger.warning("billing.invoice_id_collision", invoice_id=record.invoice_id, attempt=attempt)
                if attempt == _ID_ATTEMPTS:
                    raise
                # create() may have rolled back the session
                topup = await self._validate(request)

        await self.records.commit()

        audit_logger.log_data_change(
            user_id=topup.user_id,
            action="pre_create",
            resource_type="billing_record",
            resource_id=record.invoice_id,
            changes={
                "status": record.status,
                "amount": record.amount,
                "payment_method": record.payment_method,
                "bank": record.bank,
                "external_id": record.external_id,
            },
        )
        return record

    async def create(self, request: CreatePaymentRequest) -> CreateResult:
        invoice_id = str(request.invoice_id or "").strip()
        if not invoice_id:
            raise TopupValidationError(
                "invoiceId is required", code="INVOICE_ID_REQUIRED", extra={"field": "invoiceId"}
            )

        topup = await self._validate(request)

        record = await self.records.find_by_invoice_id(invoice_id)
        if record is None:
            raise NotFoundError(
                f"Billing record {invoice_id} not found", code="INVOICE_NOT_FOUND", extra={"invoice_id": invoice_id}
            )

        self._check_matches(record, topup, request.external_id)

        if record.is_terminal:
            raise InvalidStateTransitionError(
                invoice_id,
                record.status,
                "gateway_resource",
                message=f"Billing record {invoice_id} is already {record.status}; no gateway resource can be created",
            )

        result = await self.gateway.submit(record.gateway_request)
        resource = result.resource
        already_existed = isinstance(result, AlreadyExists)

        if record.gateway_resource_id and record.gateway_resource_id != resource.resource_id:
            logger.error(
                "billing.gateway_resource_mismatch",
                invoice_id=invoice_id,
                stored=record.gateway_resource_id,
                returned=resource.resource_id,
            )
            raise GatewayError(
                f"Gateway returned resource {resource.resource_id} for {invoice_id}, "
                f"which already has {record.gateway_resource_id}",
                body=resource.raw,
            )

        attached = await self.records.attach_gateway_resource(
            invoice_id,
            resource.resource_id,
            {
                "gateway_status": resource.status,
                "qr_string": resource.qr_string,
                "account_number": resource.account_number,
            },
        )
        if not attached:
            await self.records.rollback()
            raise GatewayError(
                f"Billing record {invoice_id} is already bound to another gateway resource",
                body=resource.raw,
            )
        await self.records.commit()

        record = await self.records.find_by_invoice_id(invoice_id)
        audit_logger.log_data_change(
            user_id=record.user_id,
            action="gateway_resource_attached",
            resource_type="billing_record",
            resource_id=invoice_id,
            changes={
                "gateway_resource_id": resource.resource_id,
                "gateway_status": resource.status,
                "already_existed": already_existed,
            },
        )
        return CreateResult(record=record, resource=resource, already_existed=already_existed)

    @staticmethod
    def _check_matches(record: BillingRecord, topup: ValidatedTopup, external_id: Optional[str]) -> None:
        expected = {
            "userId": (record.user_id, topup.user_id),
            "amount": (record.amount, topup.amount),
            "paymentMethod": (record.payment_method, topup.payment_method.value),
            "bank": (record.bank, topup.bank),
        }
        if external_id:
            expected["externalId"] = (record.external_id, external_id.strip())

        mismatched = sorted(name for name, (stored, given) in expected.items() if stored != given)
        if mismatched:
            raise TopupValidationError(
                f"Request does not match billing record {record.invoice_id}: {', '.join(mismatched)}",
                code="INVOICE_MISMATCH",
                extra={"invoice_id": record.invoice_id, "fields": mismatched},
            )
