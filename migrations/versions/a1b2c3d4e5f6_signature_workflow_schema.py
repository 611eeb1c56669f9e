"""sales workflow and electronic signature schema

Revision ID: a1b2c3d4e5f6
Revises:
Create Date: 2026-10-19 10:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "a1b2c3d4e5f6"
down_revision = None
branch_labels = None
depends_on = None


SALE_STATUSES = (
    "borrador",
    "pendiente",
    "en_auditoria",
    "rechazado",
    "aprobado_para_templates",
    "preparando_documentos",
    "esperando_ddjj",
    "en_revision",
    "listo_para_enviar",
    "enviado",
    "firmado_parcial",
    "firmado",
    "completado",
    "cancelado",
    "expirado",
)
ROLES = ("super_admin", "admin", "supervisor", "auditor", "gestor", "vendedor", "financiero")
LINK_STATUSES = ("pendiente", "visualizado", "completado", "expirado", "revocado")
OTP_RESULTS = ("pending", "verified", "expired", "max_attempts_exceeded", "superseded", "delivery_failed")


def upgrade():
    op.create_table(
        "organization",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=120), nullable=False, unique=True),
        sa.Column("code", sa.String(length=30), nullable=False, unique=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_table(
        "user_account",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("email", sa.String(length=255), nullable=False, unique=True),
        sa.Column("full_name", sa.String(length=120), nullable=False),
        sa.Column("password_hash", sa.String(length=255), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_table(
        "membership",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("user_account.id"), nullable=False),
        sa.Column("org_id", sa.Integer(), sa.ForeignKey("organization.id"), nullable=False),
        sa.Column("role", sa.String(length=30), nullable=False),
        sa.UniqueConstraint("user_id", "org_id", name="uq_membership_user_org"),
    )
    op.create_table(
        "user_role_grant",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("user_account.id"), nullable=False, index=True),
        sa.Column("org_id", sa.Integer(), sa.ForeignKey("organization.id"), nullable=False, index=True),
        sa.Column("role", sa.Enum(*ROLES, name="app_role"), nullable=False),
        sa.UniqueConstraint("user_id", "org_id", "role", name="uq_user_role_grant"),
    )
    op.create_table(
        "client",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("org_id", sa.Integer(), sa.ForeignKey("organization.id"), nullable=False, index=True),
        sa.Column("first_name", sa.String(length=120), nullable=False),
        sa.Column("last_name", sa.String(length=120), nullable=False, server_default=""),
        sa.Column("dni", sa.String(length=30), nullable=True),
        sa.Column("email", sa.String(length=255), nullable=True),
        sa.Column("phone", sa.String(length=40), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_table(
        "plan",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("org_id", sa.Integer(), sa.ForeignKey("organization.id"), nullable=False, index=True),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("price", sa.Numeric(12, 2), nullable=False, server_default="0"),
    )
    op.create_table(
        "sale",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("org_id", sa.Integer(), sa.ForeignKey("organization.id"), nullable=False, index=True),
        sa.Column("client_id", sa.Integer(), sa.ForeignKey("client.id"), nullable=True),
        sa.Column("plan_id", sa.Integer(), sa.ForeignKey("plan.id"), nullable=True),
        sa.Column("template_id", sa.Integer(), nullable=True),
        sa.Column("status", sa.Enum(*SALE_STATUSES, name="sale_status"), nullable=False),
        sa.Column("contract_number", sa.String(length=40), nullable=True),
        sa.Column("contract_pdf_url", sa.String(length=500), nullable=True),
        sa.Column("signature_token", sa.String(length=128), nullable=True),
        sa.Column("all_signatures_completed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("audit_status", sa.String(length=30), nullable=True),
        sa.Column("adherents_count", sa.Integer(), nullable=True),
        sa.Column("notes", sa.String(length=1000), nullable=False, server_default=""),
        sa.Column("created_by_user_id", sa.Integer(), sa.ForeignKey("user_account.id"), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_sale_org_status", "sale", ["org_id", "status"])
    op.create_table(
        "beneficiary",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("sale_id", sa.Integer(), sa.ForeignKey("sale.id"), nullable=False, index=True),
        sa.Column("first_name", sa.String(length=120), nullable=False),
        sa.Column("last_name", sa.String(length=120), nullable=False, server_default=""),
        sa.Column("email", sa.String(length=255), nullable=True),
        sa.Column("phone", sa.String(length=40), nullable=True),
        sa.Column("signature_required", sa.Boolean(), nullable=True),
    )
    op.create_table(
        "template_response",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("sale_id", sa.Integer(), sa.ForeignKey("sale.id"), nullable=False, index=True),
        sa.Column("question_key", sa.String(length=80), nullable=False),
        sa.Column("answer", sa.String(length=1000), nullable=False, server_default=""),
    )
    op.create_table(
        "sale_status_history",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("org_id", sa.Integer(), sa.ForeignKey("organization.id"), nullable=False, index=True),
        sa.Column("sale_id", sa.Integer(), sa.ForeignKey("sale.id"), nullable=False, index=True),
        sa.Column("from_status", sa.String(length=40), nullable=False),
        sa.Column("to_status", sa.String(length=40), nullable=False),
        sa.Column("role", sa.String(length=30), nullable=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("user_account.id"), nullable=True),
        sa.Column("rule_id", sa.String(length=80), nullable=True),
        sa.Column("note", sa.String(length=1000), nullable=False, server_default=""),
        sa.Column("changed_at", sa.DateTime(), nullable=False),
    )
    op.create_table(
        "company_workflow_config",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("org_id", sa.Integer(), sa.ForeignKey("organization.id"), nullable=False, unique=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("workflow_config", sa.JSON(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.Column("updated_by_user_id", sa.Integer(), sa.ForeignKey("user_account.id"), nullable=True),
    )
    op.create_table(
        "company_otp_policy",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("org_id", sa.Integer(), sa.ForeignKey("organization.id"), nullable=False, unique=True),
        sa.Column("require_otp_for_signature", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("otp_length", sa.Integer(), nullable=False, server_default="6"),
        sa.Column("otp_expiration_seconds", sa.Integer(), nullable=False, server_default="300"),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("default_channel", sa.String(length=20), nullable=False, server_default="email"),
        sa.Column("allowed_channels", sa.JSON(), nullable=False),
    )
    op.create_table(
        "signature_link",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("sale_id", sa.Integer(), sa.ForeignKey("sale.id"), nullable=False, index=True),
        sa.Column("token", sa.String(length=128), nullable=False, unique=True),
        sa.Column("recipient_type", sa.Enum("titular", "adherente", name="recipient_type"), nullable=False),
        sa.Column("recipient_id", sa.Integer(), nullable=True),
        sa.Column("recipient_name", sa.String(length=255), nullable=False, server_default=""),
        sa.Column("recipient_email", sa.String(length=255), nullable=True),
        sa.Column("recipient_phone", sa.String(length=40), nullable=True),
        sa.Column("status", sa.Enum(*LINK_STATUSES, name="signature_link_status"), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("access_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("accessed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("signature_data", sa.Text(), nullable=True),
        sa.Column("signed_ip", sa.String(length=64), nullable=True),
        sa.Column("signed_user_agent", sa.String(length=500), nullable=True),
        sa.Column("created_by_user_id", sa.Integer(), sa.ForeignKey("user_account.id"), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_signature_link_sale_status", "signature_link", ["sale_id", "status"])
    op.create_index("ix_signature_link_status_expires", "signature_link", ["status", "expires_at"])
    op.create_table(
        "sale_document",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("sale_id", sa.Integer(), sa.ForeignKey("sale.id"), nullable=False, index=True),
        sa.Column("beneficiary_id", sa.Integer(), sa.ForeignKey("beneficiary.id"), nullable=True),
        sa.Column("signature_link_id", sa.Integer(), sa.ForeignKey("signature_link.id"), nullable=True),
        sa.Column("document_type", sa.String(length=50), nullable=False, server_default="contrato"),
        sa.Column("name", sa.String(length=255), nullable=False, server_default=""),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("requires_signature", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column(
            "status",
            sa.Enum("pendiente", "firmado", "vencido", name="document_status"),
            nullable=False,
        ),
        sa.Column("content_hash", sa.String(length=64), nullable=True),
        sa.Column("signed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_sale_document_link_status", "sale_document", ["signature_link_id", "status"])
    op.create_table(
        "signature_workflow_step",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "signature_link_id", sa.Integer(), sa.ForeignKey("signature_link.id"), nullable=False, index=True
        ),
        sa.Column("step_order", sa.Integer(), nullable=False),
        sa.Column("step_type", sa.String(length=40), nullable=False),
        sa.Column("status", sa.String(length=30), nullable=False, server_default="completado"),
        sa.Column("data", sa.JSON(), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_table(
        "signature_identity_verification",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("signature_link_id", sa.Integer(), sa.ForeignKey("signature_link.id"), nullable=False),
        sa.Column("sale_id", sa.Integer(), sa.ForeignKey("sale.id"), nullable=False),
        sa.Column("auth_method", sa.String(length=20), nullable=False, server_default="OTP_EMAIL"),
        sa.Column("destination_masked", sa.String(length=255), nullable=False),
        sa.Column("otp_code_hash", sa.String(length=255), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("max_attempts", sa.Integer(), nullable=False),
        sa.Column("attempts_remaining", sa.Integer(), nullable=False),
        sa.Column("result", sa.Enum(*OTP_RESULTS, name="otp_result"), nullable=False),
        sa.Column("verified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("provider_message_id", sa.String(length=255), nullable=True),
        sa.Column("ip_address", sa.String(length=64), nullable=True),
        sa.Column("user_agent", sa.String(length=500), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "ix_identity_verification_link_result",
        "signature_identity_verification",
        ["signature_link_id", "result"],
    )
    op.create_table(
        "consent_record",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "signature_link_id", sa.Integer(), sa.ForeignKey("signature_link.id"), nullable=False, index=True
        ),
        sa.Column("consent_text_version", sa.String(length=40), nullable=False),
        sa.Column("ip_address", sa.String(length=64), nullable=True),
        sa.Column("user_agent", sa.String(length=500), nullable=True),
        sa.Column("accepted_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_table(
        "evidence_bundle",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("signature_link_id", sa.Integer(), sa.ForeignKey("signature_link.id"), nullable=False, unique=True),
        sa.Column("sale_id", sa.Integer(), sa.ForeignKey("sale.id"), nullable=False, index=True),
        sa.Column("bundle", sa.JSON(), nullable=False),
        sa.Column("bundle_hash", sa.String(length=64), nullable=False),
        sa.Column("document_hash", sa.String(length=64), nullable=False),
        sa.Column("integrity_status", sa.Enum("ok", "tampered", name="integrity_status"), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_table(
        "process_trace",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("action", sa.String(length=80), nullable=False),
        sa.Column("details", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )


def downgrade():
    op.drop_table("process_trace")
    op.drop_table("evidence_bundle")
    op.drop_table("consent_record")
    op.drop_index("ix_identity_verification_link_result", table_name="signature_identity_verification")
    op.drop_table("signature_identity_verification")
    op.drop_table("signature_workflow_step")
    op.drop_index("ix_sale_document_link_status", table_name="sale_document")
    op.drop_table("sale_document")
    op.drop_index("ix_signature_link_status_expires", table_name="signature_link")
    op.drop_index("ix_signature_link_sale_status", table_name="signature_link")
    op.drop_table("signature_link")
    op.drop_table("company_otp_policy")
    op.drop_table("company_workflow_config")
    op.drop_table("sale_status_history")
    op.drop_table("template_response")
    op.drop_table("beneficiary")
    op.drop_index("ix_sale_org_status", table_name="sale")
    op.drop_table("sale")
    op.drop_table("plan")
    op.drop_table("client")
    op.drop_table("user_role_grant")
    op.drop_table("membership")
    op.drop_table("user_account")
    op.drop_table("organization")
