from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum

from flask_login import UserMixin
from sqlalchemy import Enum as SAEnum, ForeignKey, Index, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship
from werkzeug.security import generate_password_hash

from app.core.extensions import db


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes; every stored timestamp is UTC.
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _values(enum_cls: type[Enum]) -> list[str]:
    return [member.value for member in enum_cls]


class SaleStatus(str, Enum):
    BORRADOR = "borrador"
    PENDIENTE = "pendiente"
    EN_AUDITORIA = "en_auditoria"
    RECHAZADO = "rechazado"
    APROBADO_PARA_TEMPLATES = "aprobado_para_templates"
    PREPARANDO_DOCUMENTOS = "preparando_documentos"
    ESPERANDO_DDJJ = "esperando_ddjj"
    EN_REVISION = "en_revision"
    LISTO_PARA_ENVIAR = "listo_para_enviar"
    ENVIADO = "enviado"
    FIRMADO_PARCIAL = "firmado_parcial"
    FIRMADO = "firmado"
    COMPLETADO = "completado"
    CANCELADO = "cancelado"
    EXPIRADO = "expirado"


class Role(str, Enum):
    SUPER_ADMIN = "super_admin"
    ADMIN = "admin"
    SUPERVISOR = "supervisor"
    AUDITOR = "auditor"
    GESTOR = "gestor"
    VENDEDOR = "vendedor"
    FINANCIERO = "financiero"


class RecipientType(str, Enum):
    TITULAR = "titular"
    ADHERENTE = "adherente"


class SignatureLinkStatus(str, Enum):
    PENDIENTE = "pendiente"
    VISUALIZADO = "visualizado"
    COMPLETADO = "completado"
    EXPIRADO = "expirado"
    REVOCADO = "revocado"


LINK_OPEN_STATUSES = (SignatureLinkStatus.PENDIENTE, SignatureLinkStatus.VISUALIZADO)
LINK_TERMINAL_STATUSES = (
    SignatureLinkStatus.COMPLETADO,
    SignatureLinkStatus.EXPIRADO,
    SignatureLinkStatus.REVOCADO,
)


class DocumentStatus(str, Enum):
    PENDIENTE = "pendiente"
    FIRMADO = "firmado"
    VENCIDO = "vencido"


class OtpResult(str, Enum):
    PENDING = "pending"
    VERIFIED = "verified"
    EXPIRED = "expired"
    MAX_ATTEMPTS_EXCEEDED = "max_attempts_exceeded"
    SUPERSEDED = "superseded"
    DELIVERY_FAILED = "delivery_failed"


class IntegrityStatus(str, Enum):
    OK = "ok"
    TAMPERED = "tampered"


class Organization(db.Model):
    # tenant (company)
    __tablename__ = "organization"

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(db.String(120), unique=True, nullable=False)
    code: Mapped[str] = mapped_column(db.String(30), unique=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)

    memberships = relationship("Membership", back_populates="organization")


class User(UserMixin, db.Model):
    __tablename__ = "user_account"

    id: Mapped[int] = mapped_column(primary_key=True)
    email: Mapped[str] = mapped_column(db.String(255), unique=True, nullable=False)
    full_name: Mapped[str] = mapped_column(db.String(120), nullable=False)
    password_hash: Mapped[str] = mapped_column(db.String(255), nullable=False)
    is_active: Mapped[bool] = mapped_column(default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)

    memberships = relationship("Membership", back_populates="user")


class Membership(db.Model):
    __tablename__ = "membership"
    __table_args__ = (UniqueConstraint("user_id", "org_id", name="uq_membership_user_org"),)

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("user_account.id"), nullable=False)
    org_id: Mapped[int] = mapped_column(ForeignKey("organization.id"), nullable=False)
    role: Mapped[str] = mapped_column(db.String(30), nullable=False, default=Role.VENDEDOR.value)

    user = relationship("User", back_populates="memberships")
    organization = relationship("Organization", back_populates="memberships")


class UserRoleGrant(db.Model):
    # additional roles granted to a user inside an organization
    __tablename__ = "user_role_grant"
    __table_args__ = (UniqueConstraint("user_id", "org_id", "role", name="uq_user_role_grant"),)

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("user_account.id"), nullable=False, index=True)
    org_id: Mapped[int] = mapped_column(ForeignKey("organization.id"), nullable=False, index=True)
    role: Mapped[Role] = mapped_column(SAEnum(Role, name="app_role", values_callable=_values), nullable=False)


class Client(db.Model):
    __tablename__ = "client"

    id: Mapped[int] = mapped_column(primary_key=True)
    org_id: Mapped[int] = mapped_column(ForeignKey("organization.id"), nullable=False, index=True)
    first_name: Mapped[str] = mapped_column(db.String(120), nullable=False)
    last_name: Mapped[str] = mapped_column(db.String(120), nullable=False, default="")
    dni: Mapped[str | None] = mapped_column(db.String(30), nullable=True)
    email: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    phone: Mapped[str | None] = mapped_column(db.String(40), nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class Plan(db.Model):
    __tablename__ = "plan"

    id: Mapped[int] = mapped_column(primary_key=True)
    org_id: Mapped[int] = mapped_column(ForeignKey("organization.id"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(db.String(120), nullable=False)
    price: Mapped[Decimal] = mapped_column(db.Numeric(12, 2), nullable=False, default=Decimal("0.00"))


class Sale(db.Model):
    __tablename__ = "sale"
    __table_args__ = (Index("ix_sale_org_status", "org_id", "status"),)

    id: Mapped[int] = mapped_column(primary_key=True)
    org_id: Mapped[int] = mapped_column(ForeignKey("organization.id"), nullable=False, index=True)
    client_id: Mapped[int | None] = mapped_column(ForeignKey("client.id"), nullable=True)
    plan_id: Mapped[int | None] = mapped_column(ForeignKey("plan.id"), nullable=True)
    template_id: Mapped[int | None] = mapped_column(nullable=True)
    status: Mapped[SaleStatus] = mapped_column(
        SAEnum(SaleStatus, name="sale_status", values_callable=_values),
        nullable=False,
        default=SaleStatus.BORRADOR,
    )
    contract_number: Mapped[str | None] = mapped_column(db.String(40), nullable=True)
    contract_pdf_url: Mapped[str | None] = mapped_column(db.String(500), nullable=True)
    signature_token: Mapped[str | None] = mapped_column(db.String(128), nullable=True)
    all_signatures_completed: Mapped[bool] = mapped_column(nullable=False, default=False)
    audit_status: Mapped[str | None] = mapped_column(db.String(30), nullable=True)
    adherents_count: Mapped[int | None] = mapped_column(nullable=True)
    notes: Mapped[str] = mapped_column(db.String(1000), nullable=False, default="")
    created_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("user_account.id"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(default=utcnow, onupdate=utcnow, nullable=False)

    client = relationship("Client")
    plan = relationship("Plan")
    beneficiaries = relationship("Beneficiary", back_populates="sale", cascade="all, delete-orphan")
    template_responses = relationship("TemplateResponse", back_populates="sale", cascade="all, delete-orphan")
    documents = relationship("SaleDocument", back_populates="sale", cascade="all, delete-orphan")
    signature_links = relationship("SignatureLink", back_populates="sale")
    status_history = relationship(
        "SaleStatusHistory",
        back_populates="sale",
        order_by="SaleStatusHistory.id",
    )


class Beneficiary(db.Model):
    # "adherente" of a sale
    __tablename__ = "beneficiary"

    id: Mapped[int] = mapped_column(primary_key=True)
    sale_id: Mapped[int] = mapped_column(ForeignKey("sale.id"), nullable=False, index=True)
    first_name: Mapped[str] = mapped_column(db.String(120), nullable=False)
    last_name: Mapped[str] = mapped_column(db.String(120), nullable=False, default="")
    email: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    phone: Mapped[str | None] = mapped_column(db.String(40), nullable=True)
    signature_required: Mapped[bool | None] = mapped_column(nullable=True)

    sale = relationship("Sale", back_populates="beneficiaries")

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class TemplateResponse(db.Model):
    # answers to the health declaration questionnaire (DDJJ)
    __tablename__ = "template_response"

    id: Mapped[int] = mapped_column(primary_key=True)
    sale_id: Mapped[int] = mapped_column(ForeignKey("sale.id"), nullable=False, index=True)
    question_key: Mapped[str] = mapped_column(db.String(80), nullable=False)
    answer: Mapped[str] = mapped_column(db.String(1000), nullable=False, default="")

    sale = relationship("Sale", back_populates="template_responses")


class SaleDocument(db.Model):
    __tablename__ = "sale_document"
    __table_args__ = (Index("ix_sale_document_link_status", "signature_link_id", "status"),)

    id: Mapped[int] = mapped_column(primary_key=True)
    sale_id: Mapped[int] = mapped_column(ForeignKey("sale.id"), nullable=False, index=True)
    beneficiary_id: Mapped[int | None] = mapped_column(ForeignKey("beneficiary.id"), nullable=True)
    signature_link_id: Mapped[int | None] = mapped_column(ForeignKey("signature_link.id"), nullable=True)
    document_type: Mapped[str] = mapped_column(db.String(50), nullable=False, default="contrato")
    name: Mapped[str] = mapped_column(db.String(255), nullable=False, default="")
    content: Mapped[str] = mapped_column(db.Text, nullable=False, default="")
    requires_signature: Mapped[bool] = mapped_column(nullable=False, default=True)
    status: Mapped[DocumentStatus] = mapped_column(
        SAEnum(DocumentStatus, name="document_status", values_callable=_values),
        nullable=False,
        default=DocumentStatus.PENDIENTE,
    )
    content_hash: Mapped[str | None] = mapped_column(db.String(64), nullable=True)
    signed_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)

    sale = relationship("Sale", back_populates="documents")


class SaleStatusHistory(db.Model):
    __tablename__ = "sale_status_history"

    id: Mapped[int] = mapped_column(primary_key=True)
    org_id: Mapped[int] = mapped_column(ForeignKey("organization.id"), nullable=False, index=True)
    sale_id: Mapped[int] = mapped_column(ForeignKey("sale.id"), nullable=False, index=True)
    from_status: Mapped[str] = mapped_column(db.String(40), nullable=False)
    to_status: Mapped[str] = mapped_column(db.String(40), nullable=False)
    role: Mapped[str | None] = mapped_column(db.String(30), nullable=True)
    user_id: Mapped[int | None] = mapped_column(ForeignKey("user_account.id"), nullable=True)
    rule_id: Mapped[str | None] = mapped_column(db.String(80), nullable=True)
    note: Mapped[str] = mapped_column(db.String(1000), nullable=False, default="")
    changed_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)

    sale = relationship("Sale", back_populates="status_history")


class CompanyWorkflowConfig(db.Model):
    __tablename__ = "company_workflow_config"

    id: Mapped[int] = mapped_column(primary_key=True)
    org_id: Mapped[int] = mapped_column(ForeignKey("organization.id"), nullable=False, unique=True)
    is_active: Mapped[bool] = mapped_column(nullable=False, default=False)
    workflow_config: Mapped[dict] = mapped_column(db.JSON, nullable=False, default=dict)
    updated_at: Mapped[datetime] = mapped_column(default=utcnow, onupdate=utcnow, nullable=False)
    updated_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("user_account.id"), nullable=True)


class CompanyOtpPolicy(db.Model):
    __tablename__ = "company_otp_policy"

    id: Mapped[int] = mapped_column(primary_key=True)
    org_id: Mapped[int] = mapped_column(ForeignKey("organization.id"), nullable=False, unique=True)
    require_otp_for_signature: Mapped[bool] = mapped_column(nullable=False, default=True)
    otp_length: Mapped[int] = mapped_column(nullable=False, default=6)
    otp_expiration_seconds: Mapped[int] = mapped_column(nullable=False, default=300)
    max_attempts: Mapped[int] = mapped_column(nullable=False, default=3)
    default_channel: Mapped[str] = mapped_column(db.String(20), nullable=False, default="email")
    allowed_channels: Mapped[list] = mapped_column(db.JSON, nullable=False, default=lambda: ["email"])


class SignatureLink(db.Model):
    __tablename__ = "signature_link"
    __table_args__ = (
        Index("ix_signature_link_sale_status", "sale_id", "status"),
        Index("ix_signature_link_status_expires", "status", "expires_at"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    sale_id: Mapped[int] = mapped_column(ForeignKey("sale.id"), nullable=False, index=True)
    token: Mapped[str] = mapped_column(db.String(128), nullable=False, unique=True)
    recipient_type: Mapped[RecipientType] = mapped_column(
        SAEnum(RecipientType, name="recipient_type", values_callable=_values),
        nullable=False,
    )
    recipient_id: Mapped[int | None] = mapped_column(nullable=True)
    recipient_name: Mapped[str] = mapped_column(db.String(255), nullable=False, default="")
    recipient_email: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    recipient_phone: Mapped[str | None] = mapped_column(db.String(40), nullable=True)
    status: Mapped[SignatureLinkStatus] = mapped_column(
        SAEnum(SignatureLinkStatus, name="signature_link_status", values_callable=_values),
        nullable=False,
        default=SignatureLinkStatus.PENDIENTE,
    )
    expires_at: Mapped[datetime] = mapped_column(db.DateTime(timezone=True), nullable=False)
    access_count: Mapped[int] = mapped_column(nullable=False, default=0)
    accessed_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)
    signature_data: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    signed_ip: Mapped[str | None] = mapped_column(db.String(64), nullable=True)
    signed_user_agent: Mapped[str | None] = mapped_column(db.String(500), nullable=True)
    created_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("user_account.id"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(db.DateTime(timezone=True), default=utcnow, nullable=False)

    sale = relationship("Sale", back_populates="signature_links")
    steps = relationship("SignatureWorkflowStep", back_populates="link", order_by="SignatureWorkflowStep.step_order")


class SignatureWorkflowStep(db.Model):
    __tablename__ = "signature_workflow_step"

    id: Mapped[int] = mapped_column(primary_key=True)
    signature_link_id: Mapped[int] = mapped_column(ForeignKey("signature_link.id"), nullable=False, index=True)
    step_order: Mapped[int] = mapped_column(nullable=False)
    step_type: Mapped[str] = mapped_column(db.String(40), nullable=False)
    status: Mapped[str] = mapped_column(db.String(30), nullable=False, default="completado")
    data: Mapped[dict] = mapped_column(db.JSON, nullable=False, default=dict)
    completed_at: Mapped[datetime] = mapped_column(db.DateTime(timezone=True), default=utcnow, nullable=False)

    link = relationship("SignatureLink", back_populates="steps")


class IdentityVerification(db.Model):
    # one OTP issuance bound to a signature link
    __tablename__ = "signature_identity_verification"
    __table_args__ = (Index("ix_identity_verification_link_result", "signature_link_id", "result"),)

    id: Mapped[int] = mapped_column(primary_key=True)
    signature_link_id: Mapped[int] = mapped_column(ForeignKey("signature_link.id"), nullable=False)
    sale_id: Mapped[int] = mapped_column(ForeignKey("sale.id"), nullable=False)
    auth_method: Mapped[str] = mapped_column(db.String(20), nullable=False, default="OTP_EMAIL")
    destination_masked: Mapped[str] = mapped_column(db.String(255), nullable=False)
    otp_code_hash: Mapped[str] = mapped_column(db.String(255), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(db.DateTime(timezone=True), nullable=False)
    max_attempts: Mapped[int] = mapped_column(nullable=False)
    attempts_remaining: Mapped[int] = mapped_column(nullable=False)
    result: Mapped[OtpResult] = mapped_column(
        SAEnum(OtpResult, name="otp_result", values_callable=_values),
        nullable=False,
        default=OtpResult.PENDING,
    )
    verified_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)
    provider_message_id: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    ip_address: Mapped[str | None] = mapped_column(db.String(64), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(db.String(500), nullable=True)
    created_at: Mapped[datetime] = mapped_column(db.DateTime(timezone=True), default=utcnow, nullable=False)


class ConsentRecord(db.Model):
    __tablename__ = "consent_record"

    id: Mapped[int] = mapped_column(primary_key=True)
    signature_link_id: Mapped[int] = mapped_column(ForeignKey("signature_link.id"), nullable=False, index=True)
    consent_text_version: Mapped[str] = mapped_column(db.String(40), nullable=False)
    ip_address: Mapped[str | None] = mapped_column(db.String(64), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(db.String(500), nullable=True)
    accepted_at: Mapped[datetime] = mapped_column(db.DateTime(timezone=True), default=utcnow, nullable=False)


class EvidenceBundleRecord(db.Model):
    __tablename__ = "evidence_bundle"

    id: Mapped[int] = mapped_column(primary_key=True)
    signature_link_id: Mapped[int] = mapped_column(ForeignKey("signature_link.id"), nullable=False, unique=True)
    sale_id: Mapped[int] = mapped_column(ForeignKey("sale.id"), nullable=False, index=True)
    bundle: Mapped[dict] = mapped_column(db.JSON, nullable=False)
    bundle_hash: Mapped[str] = mapped_column(db.String(64), nullable=False)
    document_hash: Mapped[str] = mapped_column(db.String(64), nullable=False)
    integrity_status: Mapped[IntegrityStatus] = mapped_column(
        SAEnum(IntegrityStatus, name="integrity_status", values_callable=_values),
        nullable=False,
        default=IntegrityStatus.OK,
    )
    created_at: Mapped[datetime] = mapped_column(db.DateTime(timezone=True), default=utcnow, nullable=False)


class ProcessTrace(db.Model):
    __tablename__ = "process_trace"

    id: Mapped[int] = mapped_column(primary_key=True)
    action: Mapped[str] = mapped_column(db.String(80), nullable=False)
    details: Mapped[dict] = mapped_column(db.JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(db.DateTime(timezone=True), default=utcnow, nullable=False)


def seed_demo_data(session) -> None:
    from app.workflow.config import DEFAULT_WORKFLOW_CONFIG

    org = Organization(name="Prepaga Demo", code="DEMO")
    session.add(org)
    session.flush()

    admin = User(
        email="admin@prepaga.local",
        full_name="Admin Prepaga",
        password_hash=generate_password_hash("admin123"),
    )
    vendedor = User(
        email="vendedor@prepaga.local",
        full_name="Vendedor Prepaga",
        password_hash=generate_password_hash("vendedor123"),
    )
    auditor = User(
        email="auditor@prepaga.local",
        full_name="Auditor Prepaga",
        password_hash=generate_password_hash("auditor123"),
    )
    session.add_all([admin, vendedor, auditor])
    session.flush()

    session.add_all(
        [
            Membership(user_id=admin.id, org_id=org.id, role=Role.ADMIN.value),
            Membership(user_id=vendedor.id, org_id=org.id, role=Role.VENDEDOR.value),
            Membership(user_id=auditor.id, org_id=org.id, role=Role.AUDITOR.value),
        ]
    )
    session.add(
        CompanyWorkflowConfig(
            org_id=org.id,
            is_active=True,
            workflow_config=DEFAULT_WORKFLOW_CONFIG.to_dict(),
        )
    )

    client = Client(
        org_id=org.id,
        first_name="Ana",
        last_name="Benítez",
        dni="4123456",
        email="ana.benitez@example.com",
        phone="+595981000111",
    )
    plan = Plan(org_id=org.id, name="Plan Familiar", price=Decimal("350000.00"))
    session.add_all([client, plan])
    session.flush()

    sale = Sale(
        org_id=org.id,
        client_id=client.id,
        plan_id=plan.id,
        status=SaleStatus.BORRADOR,
        contract_number="C-0001",
        adherents_count=1,
        created_by_user_id=vendedor.id,
    )
    session.add(sale)
    session.flush()

    beneficiary = Beneficiary(
        sale_id=sale.id,
        first_name="Luis",
        last_name="Benítez",
        email="luis.benitez@example.com",
        phone="+595981000222",
    )
    session.add(beneficiary)
    session.flush()
    session.add_all(
        [
            SaleDocument(
                sale_id=sale.id,
                document_type="contrato",
                name="Contrato de adhesión",
                content="Contrato de adhesión C-0001 - Plan Familiar - Titular Ana Benítez",
            ),
            SaleDocument(
                sale_id=sale.id,
                beneficiary_id=beneficiary.id,
                document_type="ddjj",
                name="Declaración jurada de salud",
                content="Declaración jurada de salud - Adherente Luis Benítez",
            ),
        ]
    )
    session.commit()
