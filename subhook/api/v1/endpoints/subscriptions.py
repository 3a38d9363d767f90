"""
Subscription endpoints: checkout, per-user lookups, payment history,
lifecycle transitions, renewal and on-demand reconciliation.
"""
from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status

from subhook.core.dependencies import (
    get_billing_engine,
    get_reconciliation_service,
    get_state_machine,
)
from subhook.core.exceptions import BillingError
from subhook.schemas.billing import (
    ActiveSubscriptionCheck,
    ActiveSubscriptionSummary,
    CancelRequest,
    CheckoutResponse,
    PaymentDetail,
    ReconcileResponse,
    RenewalResponse,
    SubscribeRequest,
    SubscriptionDetail,
    TransitionResponse,
)
from subhook.services.billing_engine import BillingEngine
from subhook.services.payment_ledger import PaymentLedger
from subhook.services.reconciliation_service import ReconciliationService
from subhook.services.subscription_state import SubscriptionStateMachine, TransitionResult

router = APIRouter()


def _raise_billing_http_error(exc: BillingError) -> None:
    """
    Convert domain error to HTTP response.
    """
    status_code = status.HTTP_400_BAD_REQUEST
    if exc.code in {"not_found", "subscription_not_found", "plan_not_found", "coupon_not_found",
                    "gateway_resource_not_found"}:
        status_code = status.HTTP_404_NOT_FOUND
    elif exc.code in {"conflict", "invalid_state", "concurrent_update"}:
        status_code = status.HTTP_409_CONFLICT
    elif exc.code in {"service_unavailable", "gateway_not_configured"}:
        status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    elif exc.code == "gateway_rejected":
        status_code = status.HTTP_402_PAYMENT_REQUIRED
    raise HTTPException(status_code=status_code, detail=exc.detail) from exc


def _transition_response(result: TransitionResult) -> TransitionResponse:
    return TransitionResponse(
        subscription=SubscriptionDetail.model_validate(result.subscription),
        applied=result.applied,
        previous_status=result.previous_status.value if result.previous_status else None,
    )


@router.post("", response_model=CheckoutResponse, status_code=status.HTTP_201_CREATED)
async def subscribe(
    payload: SubscribeRequest,
    engine: BillingEngine = Depends(get_billing_engine),
) -> CheckoutResponse:
    try:
        checkout = await engine.subscribe(
            user_id=payload.user_id,
            plan_id=payload.plan_id,
            coupon_code=payload.coupon_code,
            metadata=payload.metadata,
        )
    except BillingError as exc:
        _raise_billing_http_error(exc)
    return CheckoutResponse(
        subscription=SubscriptionDetail.model_validate(checkout.subscription),
        payment=PaymentDetail.model_validate(checkout.payment),
    )


@router.get("/users/{user_id}", response_model=list[SubscriptionDetail])
async def list_user_subscriptions(
    user_id: UUID,
    machine: SubscriptionStateMachine = Depends(get_state_machine),
) -> list[SubscriptionDetail]:
    """Every subscription of the user, newest first."""
    subscriptions = await machine.list_for_user(user_id)
    return [SubscriptionDetail.model_validate(subscription) for subscription in subscriptions]


@router.get("/users/{user_id}/active", response_model=ActiveSubscriptionCheck)
async def check_active_subscription(
    user_id: UUID,
    machine: SubscriptionStateMachine = Depends(get_state_machine),
) -> ActiveSubscriptionCheck:
    subscription = await machine.find_active_for_user(user_id)
    if subscription is None:
        return ActiveSubscriptionCheck(has_active_subscription=False)
    try:
        plan = await machine.get_plan(subscription.plan_id)
    except BillingError as exc:
        _raise_billing_http_error(exc)
    return ActiveSubscriptionCheck(
        has_active_subscription=True,
        subscription=ActiveSubscriptionSummary(
            id=subscription.id,
            plan_name=plan.name,
            next_billing_date=subscription.next_billing_date,
        ),
    )


@router.get("/{subscription_id}", response_model=SubscriptionDetail)
async def get_subscription(
    subscription_id: UUID,
    machine: SubscriptionStateMachine = Depends(get_state_machine),
) -> SubscriptionDetail:
    try:
        subscription = await machine.get(subscription_id)
    except BillingError as exc:
        _raise_billing_http_error(exc)
    return SubscriptionDetail.model_validate(subscription)


@router.get("/{subscription_id}/payments", response_model=list[PaymentDetail])
async def list_subscription_payments(
    subscription_id: UUID,
    limit: int = Query(default=50, ge=1, le=200),
    machine: SubscriptionStateMachine = Depends(get_state_machine),
) -> list[PaymentDetail]:
    try:
        subscription = await machine.get(subscription_id)
    except BillingError as exc:
        _raise_billing_http_error(exc)
    payments = await PaymentLedger(machine.db).history(subscription.id, limit=limit)
    return [PaymentDetail.model_validate(payment) for payment in payments]


@router.post("/{subscription_id}/pause", response_model=TransitionResponse)
async def pause_subscription(
    subscription_id: UUID,
    machine: SubscriptionStateMachine = Depends(get_state_machine),
) -> TransitionResponse:
    try:
        result = await machine.pause(await machine.get(subscription_id))
    except BillingError as exc:
        _raise_billing_http_error(exc)
    return _transition_response(result)


@router.post("/{subscription_id}/resume", response_model=TransitionResponse)
async def resume_subscription(
    subscription_id: UUID,
    machine: SubscriptionStateMachine = Depends(get_state_machine),
) -> TransitionResponse:
    try:
        result = await machine.resume(await machine.get(subscription_id))
    except BillingError as exc:
        _raise_billing_http_error(exc)
    return _transition_response(result)


@router.post("/{subscription_id}/cancel", response_model=TransitionResponse)
async def cancel_subscription(
    subscription_id: UUID,
    payload: CancelRequest | None = None,
    machine: SubscriptionStateMachine = Depends(get_state_machine),
) -> TransitionResponse:
    reason = payload.reason if payload is not None else None
    try:
        result = await machine.cancel(await machine.get(subscription_id), reason)
    except BillingError as exc:
        _raise_billing_http_error(exc)
    return _transition_response(result)


@router.post("/{subscription_id}/renew", response_model=RenewalResponse)
async def renew_subscription(
    subscription_id: UUID,
    machine: SubscriptionStateMachine = Depends(get_state_machine),
) -> RenewalResponse:
    """Charge now. Business failures come back with ``success=false``."""
    try:
        result = await machine.renew(subscription_id)
    except BillingError as exc:
        _raise_billing_http_error(exc)
    return RenewalResponse(
        success=result.success,
        new_status=result.new_status.value if result.new_status else None,
        error=result.error,
        subscription=(
            SubscriptionDetail.model_validate(result.subscription) if result.subscription else None
        ),
        payment=PaymentDetail.model_validate(result.payment) if result.payment else None,
    )


@router.post("/{subscription_id}/reconcile", response_model=ReconcileResponse)
async def reconcile_subscription(
    subscription_id: UUID,
    machine: SubscriptionStateMachine = Depends(get_state_machine),
    reconciler: ReconciliationService = Depends(get_reconciliation_service),
) -> ReconcileResponse:
    try:
        subscription = await machine.get(subscription_id)
        if not subscription.external_subscription_id:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="Subscription has no gateway id yet",
            )
        result = await reconciler.reconcile(subscription.external_subscription_id)
        await machine.db.commit()
    except BillingError as exc:
        _raise_billing_http_error(exc)
    return ReconcileResponse(**result.as_dict())
