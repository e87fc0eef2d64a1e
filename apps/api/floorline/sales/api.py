from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from floorline.api.errors import domain_error_response
from floorline.core.auth import AuthUser, get_current_customer
from floorline.core.database import get_db
from floorline.core.rbac import require_permissions
from floorline.errors import EntityNotFoundError, FloorlineError
from floorline.sales.models import Contract, Estimate, Invoice
from floorline.sales.schemas import (
    ContractRead,
    ContractSignRequest,
    ConvertEstimateRequest,
    CustomerDecision,
    EstimateCreate,
    EstimateRead,
    InvoiceFromContractCreate,
    InvoiceRead,
    PaymentCreate,
    PaymentRead,
    PaymentRecorded,
)
from floorline.sales.service import contract_service, estimate_service, invoice_service, payment_service


estimates_router = APIRouter(prefix="/api/estimates", tags=["sales.estimates"])
contracts_router = APIRouter(prefix="/api/contracts", tags=["sales.contracts"])
invoices_router = APIRouter(prefix="/api/invoices", tags=["sales.invoices"])
payments_router = APIRouter(prefix="/api/payments", tags=["sales.payments"])
customer_sales_router = APIRouter(prefix="/api/customer", tags=["sales.customer"])


def _owned(document: Estimate | Contract | Invoice, customer: AuthUser, entity_type: str) -> None:
    if document.customer_user_id is None or str(document.customer_user_id) != customer.sub:
        raise EntityNotFoundError(entity_type, document.id)


@estimates_router.get("", response_model=list[EstimateRead])
def list_estimates(
    contact_id: int | None = Query(default=None),
    db: Session = Depends(get_db),
    user: AuthUser = Depends(require_permissions("sales.manage")),
) -> list[EstimateRead]:
    return [EstimateRead.model_validate(item) for item in estimate_service.list_estimates(db, contact_id=contact_id)]


@estimates_router.post("", response_model=EstimateRead, status_code=status.HTTP_201_CREATED)
def create_estimate(
    request: Request,
    dto: EstimateCreate,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(require_permissions("sales.manage")),
) -> EstimateRead | JSONResponse:
    try:
        return EstimateRead.model_validate(estimate_service.create_estimate(db, dto, actor_user_id=user.sub))
    except FloorlineError as exc:
        return domain_error_response(request, exc, code="sales_estimate_create_failed")


@estimates_router.get("/{estimate_id}", response_model=EstimateRead)
def get_estimate(
    request: Request,
    estimate_id: int,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(require_permissions("sales.manage")),
) -> EstimateRead | JSONResponse:
    try:
        return EstimateRead.model_validate(estimate_service.get_estimate(db, estimate_id))
    except FloorlineError as exc:
        return domain_error_response(request, exc, code="sales_estimate_get_failed")


@estimates_router.post("/{estimate_id}/send", response_model=EstimateRead)
def send_estimate(
    request: Request,
    estimate_id: int,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(require_permissions("sales.manage")),
) -> EstimateRead | JSONResponse:
    try:
        return EstimateRead.model_validate(estimate_service.send_estimate(db, estimate_id, actor_user_id=user.sub))
    except FloorlineError as exc:
        return domain_error_response(request, exc, code="sales_estimate_send_failed")


@estimates_router.post("/{estimate_id}/convert", response_model=ContractRead, status_code=status.HTTP_201_CREATED)
def convert_estimate(
    request: Request,
    estimate_id: int,
    dto: ConvertEstimateRequest | None = None,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(require_permissions("sales.manage")),
) -> ContractRead | JSONResponse:
    try:
        contract = contract_service.create_from_estimate(
            db,
            estimate_id,
            send_to_customer=dto.send_to_customer if dto is not None else False,
            actor_user_id=user.sub,
        )
        return ContractRead.model_validate(contract)
    except FloorlineError as exc:
        return domain_error_response(request, exc, code="sales_estimate_convert_failed")


@contracts_router.get("", response_model=list[ContractRead])
def list_contracts(
    db: Session = Depends(get_db),
    user: AuthUser = Depends(require_permissions("sales.manage")),
) -> list[ContractRead]:
    return [ContractRead.model_validate(item) for item in contract_service.list_contracts(db)]


@contracts_router.get("/{contract_id}", response_model=ContractRead)
def get_contract(
    request: Request,
    contract_id: int,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(require_permissions("sales.manage")),
) -> ContractRead | JSONResponse:
    try:
        return ContractRead.model_validate(contract_service.get_contract(db, contract_id))
    except FloorlineError as exc:
        return domain_error_response(request, exc, code="sales_contract_get_failed")


@contracts_router.post("/{contract_id}/send", response_model=ContractRead)
def send_contract(
    request: Request,
    contract_id: int,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(require_permissions("sales.manage")),
) -> ContractRead | JSONResponse:
    try:
        return ContractRead.model_validate(contract_service.send_contract(db, contract_id, actor_user_id=user.sub))
    except FloorlineError as exc:
        return domain_error_response(request, exc, code="sales_contract_send_failed")


@invoices_router.get("", response_model=list[InvoiceRead])
def list_invoices(
    db: Session = Depends(get_db),
    user: AuthUser = Depends(require_permissions("sales.manage")),
) -> list[InvoiceRead]:
    return [InvoiceRead.model_validate(item) for item in invoice_service.list_invoices(db)]


@invoices_router.post("", response_model=InvoiceRead, status_code=status.HTTP_201_CREATED)
def create_invoice(
    request: Request,
    dto: InvoiceFromContractCreate,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(require_permissions("sales.manage")),
) -> InvoiceRead | JSONResponse:
    try:
        invoice = invoice_service.create_from_contract(
            db,
            dto.contract_id,
            dto.payment_schedule_item_id,
            due_date=dto.due_date,
            notes=dto.notes,
            actor_user_id=user.sub,
        )
        return InvoiceRead.model_validate(invoice)
    except FloorlineError as exc:
        return domain_error_response(request, exc, code="sales_invoice_create_failed")


@invoices_router.get("/{invoice_id}", response_model=InvoiceRead)
def get_invoice(
    request: Request,
    invoice_id: int,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(require_permissions("sales.manage")),
) -> InvoiceRead | JSONResponse:
    try:
        return InvoiceRead.model_validate(invoice_service.get_invoice(db, invoice_id))
    except FloorlineError as exc:
        return domain_error_response(request, exc, code="sales_invoice_get_failed")


@invoices_router.post("/{invoice_id}/send", response_model=InvoiceRead)
def send_invoice(
    request: Request,
    invoice_id: int,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(require_permissions("sales.manage")),
) -> InvoiceRead | JSONResponse:
    try:
        return InvoiceRead.model_validate(invoice_service.send_invoice(db, invoice_id, actor_user_id=user.sub))
    except FloorlineError as exc:
        return domain_error_response(request, exc, code="sales_invoice_send_failed")


@invoices_router.post("/{invoice_id}/payments", response_model=PaymentRecorded, status_code=status.HTTP_201_CREATED)
def record_payment(
    request: Request,
    invoice_id: int,
    dto: PaymentCreate,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(require_permissions("sales.manage")),
) -> PaymentRecorded | JSONResponse:
    try:
        payment = payment_service.record_payment(
            db,
            invoice_id,
            amount=dto.amount,
            payment_method=dto.payment_method,
            transaction_id=dto.transaction_id,
            notes=dto.notes,
            actor_user_id=user.sub,
        )
        invoice = invoice_service.get_invoice(db, invoice_id)
        return PaymentRecorded(payment=PaymentRead.model_validate(payment), invoice=InvoiceRead.model_validate(invoice))
    except FloorlineError as exc:
        return domain_error_response(request, exc, code="sales_payment_record_failed")


@payments_router.post("/{payment_id}/send-receipt", response_model=PaymentRead)
def send_payment_receipt(
    request: Request,
    payment_id: int,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(require_permissions("sales.manage")),
) -> PaymentRead | JSONResponse:
    try:
        payment, _ = payment_service.send_receipt(db, payment_id, actor_user_id=user.sub)
        return PaymentRead.model_validate(payment)
    except FloorlineError as exc:
        return domain_error_response(request, exc, code="sales_payment_receipt_failed")


@customer_sales_router.get("/estimates", response_model=list[EstimateRead])
def list_my_estimates(
    db: Session = Depends(get_db),
    customer: AuthUser = Depends(get_current_customer),
) -> list[EstimateRead]:
    estimates = estimate_service.list_estimates(db, customer_user_id=int(customer.sub))
    return [EstimateRead.model_validate(item) for item in estimates if item.status != "draft"]


@customer_sales_router.get("/estimates/{estimate_id}", response_model=EstimateRead)
def view_my_estimate(
    request: Request,
    estimate_id: int,
    db: Session = Depends(get_db),
    customer: AuthUser = Depends(get_current_customer),
) -> EstimateRead | JSONResponse:
    try:
        _owned(estimate_service.get_estimate(db, estimate_id), customer, "estimate")
        return EstimateRead.model_validate(estimate_service.mark_viewed(db, estimate_id))
    except FloorlineError as exc:
        return domain_error_response(request, exc, code="sales_estimate_get_failed")


@customer_sales_router.post("/estimates/{estimate_id}/approve", response_model=EstimateRead)
def approve_my_estimate(
    request: Request,
    estimate_id: int,
    dto: CustomerDecision,
    db: Session = Depends(get_db),
    customer: AuthUser = Depends(get_current_customer),
) -> EstimateRead | JSONResponse:
    try:
        _owned(estimate_service.get_estimate(db, estimate_id), customer, "estimate")
        estimate = estimate_service.approve_estimate(
            db,
            estimate_id,
            actor_user_id=f"customer:{customer.sub}",
            customer_notes=dto.customer_notes,
        )
        return EstimateRead.model_validate(estimate)
    except FloorlineError as exc:
        return domain_error_response(request, exc, code="sales_estimate_approve_failed")


@customer_sales_router.post("/estimates/{estimate_id}/reject", response_model=EstimateRead)
def reject_my_estimate(
    request: Request,
    estimate_id: int,
    dto: CustomerDecision,
    db: Session = Depends(get_db),
    customer: AuthUser = Depends(get_current_customer),
) -> EstimateRead | JSONResponse:
    try:
        _owned(estimate_service.get_estimate(db, estimate_id), customer, "estimate")
        estimate = estimate_service.reject_estimate(
            db,
            estimate_id,
            actor_user_id=f"customer:{customer.sub}",
            customer_notes=dto.customer_notes,
        )
        return EstimateRead.model_validate(estimate)
    except FloorlineError as exc:
        return domain_error_response(request, exc, code="sales_estimate_reject_failed")


@customer_sales_router.get("/contracts/{contract_id}", response_model=ContractRead)
def view_my_contract(
    request: Request,
    contract_id: int,
    db: Session = Depends(get_db),
    customer: AuthUser = Depends(get_current_customer),
) -> ContractRead | JSONResponse:
    try:
        _owned(contract_service.get_contract(db, contract_id), customer, "contract")
        return ContractRead.model_validate(contract_service.mark_viewed(db, contract_id))
    except FloorlineError as exc:
        return domain_error_response(request, exc, code="sales_contract_get_failed")


@customer_sales_router.post("/contracts/{contract_id}/sign", response_model=ContractRead)
def sign_my_contract(
    request: Request,
    contract_id: int,
    dto: ContractSignRequest,
    db: Session = Depends(get_db),
    customer: AuthUser = Depends(get_current_customer),
) -> ContractRead | JSONResponse:
    try:
        _owned(contract_service.get_contract(db, contract_id), customer, "contract")
        contract = contract_service.sign_contract(
            db,
            contract_id,
            signature=dto.signature,
            actor_user_id=f"customer:{customer.sub}",
        )
        return ContractRead.model_validate(contract)
    except FloorlineError as exc:
        return domain_error_response(request, exc, code="sales_contract_sign_failed")


@customer_sales_router.get("/invoices/{invoice_id}", response_model=InvoiceRead)
def view_my_invoice(
    request: Request,
    invoice_id: int,
    db: Session = Depends(get_db),
    customer: AuthUser = Depends(get_current_customer),
) -> InvoiceRead | JSONResponse:
    try:
        _owned(invoice_service.get_invoice(db, invoice_id), customer, "invoice")
        return InvoiceRead.model_validate(invoice_service.mark_viewed(db, invoice_id))
    except FloorlineError as exc:
        return domain_error_response(request, exc, code="sales_invoice_get_failed")


@customer_sales_router.post("/invoices/{invoice_id}/pay", response_model=PaymentRecorded, status_code=status.HTTP_201_CREATED)
def pay_my_invoice(
    request: Request,
    invoice_id: int,
    dto: PaymentCreate,
    db: Session = Depends(get_db),
    customer: AuthUser = Depends(get_current_customer),
) -> PaymentRecorded | JSONResponse:
    try:
        _owned(invoice_service.get_invoice(db, invoice_id), customer, "invoice")
        payment = payment_service.record_payment(
            db,
            invoice_id,
            amount=dto.amount,
            payment_method=dto.payment_method,
            transaction_id=dto.transaction_id,
            notes=dto.notes,
            customer_user_id=int(customer.sub),
            actor_user_id=f"customer:{customer.sub}",
        )
        invoice = invoice_service.get_invoice(db, invoice_id)
        return PaymentRecorded(payment=PaymentRead.model_validate(payment), invoice=InvoiceRead.model_validate(invoice))
    except FloorlineError as exc:
        return domain_error_response(request, exc, code="sales_invoice_pay_failed")
