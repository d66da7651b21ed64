"""Public agreement API"""

from typing import Optional
from uuid import UUID

import structlog
from fastapi import APIRouter, BackgroundTasks, Depends
from sqlalchemy.orm import Session

from mobilepay_bridge.api.auth import require_api_key
from mobilepay_bridge.api.dependencies import get_client, get_notifier
from mobilepay_bridge.clients.mobilepay_client import MobilePayClient
from mobilepay_bridge.database.database import get_db
from mobilepay_bridge.database.models import Agreement, SubscriptionLink, SubscriptionLinkStatus
from mobilepay_bridge.exceptions import BridgeError, NotFound
from mobilepay_bridge.schemas.api import CancelAgreementRequest, CreateAgreementRequest
from mobilepay_bridge.services.agreement_service import (
    PRODUCT_DESCRIPTION,
    PRODUCT_NAMES,
    AgreementService,
)
from mobilepay_bridge.services.notification_service import NotificationService

logger = structlog.get_logger(__name__)
router = APIRouter(dependencies=[Depends(require_api_key)])


def _agreement_out(agreement: Agreement) -> dict:
    return {
        "id": agreement.id,
        "mobilepayAgreementId": agreement.mobilepay_agreement_id,
        "status": agreement.status,
        "amount": agreement.amount / 100,
        "currency": agreement.currency,
        "intervalUnit": agreement.interval_unit,
        "intervalCount": agreement.interval_count,
        "productName": agreement.product_name,
        "productDescription": agreement.product_description,
        "createdAt": agreement.created_at.isoformat() if agreement.created_at else None,
    }


def _get_agreement_or_404(db: Session, agreement_id: UUID) -> Agreement:
    agreement = db.query(Agreement).filter(Agreement.id == str(agreement_id)).first()
    if not agreement:
        raise NotFound("Agreement not found", details={"agreement_id": str(agreement_id)})
    return agreement


@router.post("/agreements", status_code=201)
async def create_agreement(
    request: CreateAgreementRequest,
    db: Session = Depends(get_db),
    client: MobilePayClient = Depends(get_client),
):
    """Create a recurring agreement; redirect the payer to ``confirmationUrl``."""
    service = AgreementService(db, client=client)
    customer = service.get_or_create_customer(
        request.customer.email,
        phone=request.customer.phone,
        name=request.customer.name,
        billing_customer_id=request.customer.billing_customer_id,
    )

    agreement = await service.create_agreement(
        customer,
        request.plan.type,
        request.plan.amount,
        PRODUCT_NAMES[request.plan.type],
        PRODUCT_DESCRIPTION,
    )
    service.create_subscription_link(customer, agreement, request.plan.type)

    return {
        "success": True,
        "agreementId": agreement.id,
        "confirmationUrl": agreement.confirmation_url or "",
        "message": "Agreement created successfully. Redirect user to confirmationUrl.",
    }


@router.get("/agreements/{agreement_id}")
async def get_agreement(
    agreement_id: UUID,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    client: MobilePayClient = Depends(get_client),
    notifier: NotificationService = Depends(get_notifier),
):
    """Return the agreement after refreshing its status from MobilePay.

    The activation notification runs after the response is sent.
    """
    agreement = _get_agreement_or_404(db, agreement_id)

    service = AgreementService(db, client=client, notifier=notifier)
    try:
        agreement = await service.sync_agreement_status(agreement, defer=background_tasks.add_task)
    except BridgeError as e:
        # stored status is still a valid answer
        logger.warning("agreement_status_poll_failed", agreement_id=agreement.id, error=e.message)

    return {"success": True, "agreement": _agreement_out(agreement)}


@router.post("/agreements/{agreement_id}/cancel")
async def cancel_agreement(
    agreement_id: UUID,
    request: Optional[CancelAgreementRequest] = None,
    db: Session = Depends(get_db),
    client: MobilePayClient = Depends(get_client),
):
    agreement = _get_agreement_or_404(db, agreement_id)

    service = AgreementService(db, client=client)
    await service.cancel_agreement(agreement.mobilepay_agreement_id)
    logger.info(
        "agreement_cancel_requested",
        agreement_id=agreement.id,
        reason=request.reason if request else None,
    )

    return {"success": True, "message": "Agreement cancelled successfully"}


@router.get("/customers/{customer_id}/agreements")
async def list_customer_agreements(customer_id: UUID, db: Session = Depends(get_db)):
    agreements = (
        db.query(Agreement)
        .filter(Agreement.customer_id == str(customer_id))
        .order_by(Agreement.created_at.desc())
        .all()
    )

    results = []
    for agreement in agreements:
        active_link = (
            db.query(SubscriptionLink)
            .filter(
                SubscriptionLink.agreement_id == agreement.id,
                SubscriptionLink.status == SubscriptionLinkStatus.active.value,
            )
            .first()
        )
        results.append(
            {
                "id": agreement.id,
                "mobilepayAgreementId": agreement.mobilepay_agreement_id,
                "status": agreement.status,
                "amount": agreement.amount / 100,
                "currency": agreement.currency,
                "productName": agreement.product_name,
                "nextBillingDate": active_link.next_billing_date.isoformat() if active_link else None,
                "createdAt": agreement.created_at.isoformat() if agreement.created_at else None,
            }
        )

    return {"success": True, "agreements": results}
