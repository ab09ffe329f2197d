"""Initial schema.

Revision ID: 001
Revises: None
Create Date: 2026-10-19 00:00:00.000000+00:00

Creates all tables for VendorSign:
- identities (read-only mirror of the identity workflow)
- certificates (issued signing certificates, encrypted keys)
- documents, sign_jobs (signing pipeline state)
- jobs (background processing)
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _uuid_pk(name: str) -> sa.Column:
    return sa.Column(
        name,
        postgresql.UUID(as_uuid=True),
        server_default=sa.text("gen_random_uuid()"),
        nullable=False,
    )


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
    ]


def upgrade() -> None:
    """Apply migration: initial schema."""
    verification_status = postgresql.ENUM(
        "pending", "verified", "rejected", name="verification_status", create_type=False
    )
    verification_status.create(op.get_bind(), checkfirst=True)

    certificate_status = postgresql.ENUM(
        "issued", "revoked", name="certificate_status", create_type=False
    )
    certificate_status.create(op.get_bind(), checkfirst=True)

    document_status = postgresql.ENUM(
        "uploaded", "signing", "signed", "failed", name="document_status", create_type=False
    )
    document_status.create(op.get_bind(), checkfirst=True)

    sign_job_status = postgresql.ENUM(
        "queued", "processing", "signed", "failed", name="sign_job_status", create_type=False
    )
    sign_job_status.create(op.get_bind(), checkfirst=True)

    job_status = postgresql.ENUM(
        "pending",
        "running",
        "completed",
        "failed",
        "cancelled",
        name="job_status",
        create_type=False,
    )
    job_status.create(op.get_bind(), checkfirst=True)

    op.create_table(
        "identities",
        _uuid_pk("identity_id"),
        *_timestamps(),
        sa.Column("display_name", sa.String(255), nullable=False),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column(
            "verification_status",
            verification_status,
            nullable=False,
            server_default=sa.text("'pending'"),
        ),
        sa.PrimaryKeyConstraint("identity_id", name=op.f("pk_identities")),
    )

    op.create_table(
        "certificates",
        _uuid_pk("certificate_id"),
        *_timestamps(),
        sa.Column("identity_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("serial", sa.String(100), nullable=False),
        sa.Column("subject_dn", sa.String(1000), nullable=False),
        sa.Column("certificate_pem", sa.Text(), nullable=False),
        sa.Column("certificate_chain_pem", sa.Text(), nullable=True),
        sa.Column("encrypted_private_key", sa.LargeBinary(), nullable=False),
        sa.Column("key_encryption_key_id", sa.String(100), nullable=False),
        sa.Column("key_type", sa.String(20), nullable=False),
        sa.Column(
            "status",
            certificate_status,
            nullable=False,
            server_default=sa.text("'issued'"),
        ),
        sa.Column(
            "issued_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column("not_after", sa.DateTime(timezone=True), nullable=True),
        sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("revocation_reason", sa.String(500), nullable=True),
        sa.ForeignKeyConstraint(
            ["identity_id"],
            ["identities.identity_id"],
            name=op.f("fk_certificates_identity_id_identities"),
            ondelete="RESTRICT",
        ),
        sa.PrimaryKeyConstraint("certificate_id", name=op.f("pk_certificates")),
    )
    op.create_index(
        op.f("ix_certificates_identity_id"), "certificates", ["identity_id"], unique=False
    )
    op.create_index(op.f("ix_certificates_serial"), "certificates", ["serial"], unique=True)
    op.create_index(
        "uq_certificates_identity_issued",
        "certificates",
        ["identity_id"],
        unique=True,
        postgresql_where=sa.text("status = 'issued'"),
    )

    op.create_table(
        "documents",
        _uuid_pk("document_id"),
        *_timestamps(),
        sa.Column("owner_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("filename", sa.String(500), nullable=True),
        sa.Column("storage_key_input", sa.String(1000), nullable=False),
        sa.Column("storage_key_signed", sa.String(1000), nullable=True),
        sa.Column(
            "status",
            document_status,
            nullable=False,
            server_default=sa.text("'uploaded'"),
        ),
        sa.Column("digest_input", sa.String(64), nullable=True),
        sa.Column("digest_signed", sa.String(64), nullable=True),
        sa.Column("signature_cms", sa.LargeBinary(), nullable=True),
        sa.Column("signed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("document_id", name=op.f("pk_documents")),
    )
    op.create_index(op.f("ix_documents_owner_id"), "documents", ["owner_id"], unique=False)
    op.create_index(op.f("ix_documents_status"), "documents", ["status"], unique=False)

    op.create_table(
        "sign_jobs",
        _uuid_pk("sign_job_id"),
        *_timestamps(),
        sa.Column("document_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("certificate_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("page", sa.Integer(), nullable=False),
        sa.Column("x", sa.Float(), nullable=False),
        sa.Column("y", sa.Float(), nullable=False),
        sa.Column("width", sa.Float(), nullable=False),
        sa.Column("height", sa.Float(), nullable=False),
        sa.Column("reason", sa.String(500), nullable=False),
        sa.Column("signature_image_key", sa.String(1000), nullable=True),
        sa.Column(
            "status",
            sign_job_status,
            nullable=False,
            server_default=sa.text("'queued'"),
        ),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("signed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("storage_key_output", sa.String(1000), nullable=True),
        sa.Column("digest_signed", sa.String(64), nullable=True),
        sa.ForeignKeyConstraint(
            ["document_id"],
            ["documents.document_id"],
            name=op.f("fk_sign_jobs_document_id_documents"),
            ondelete="RESTRICT",
        ),
        sa.ForeignKeyConstraint(
            ["certificate_id"],
            ["certificates.certificate_id"],
            name=op.f("fk_sign_jobs_certificate_id_certificates"),
            ondelete="RESTRICT",
        ),
        sa.PrimaryKeyConstraint("sign_job_id", name=op.f("pk_sign_jobs")),
    )
    op.create_index(
        op.f("ix_sign_jobs_document_id"), "sign_jobs", ["document_id"], unique=False
    )
    op.create_index(op.f("ix_sign_jobs_status"), "sign_jobs", ["status"], unique=False)

    op.create_table(
        "jobs",
        _uuid_pk("job_id"),
        *_timestamps(),
        sa.Column("job_type", sa.String(100), nullable=False),
        sa.Column("status", job_status, nullable=False, server_default=sa.text("'pending'")),
        sa.Column("run_at", sa.DateTime(), nullable=False),
        sa.Column("locked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("locked_by", sa.String(255), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default=sa.text("3")),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column(
            "base_backoff_seconds",
            sa.Integer(),
            nullable=False,
            server_default=sa.text("60"),
        ),
        sa.Column("payload_json", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("result_json", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("priority", sa.Integer(), nullable=False, server_default=sa.text("100")),
        sa.Column("queue", sa.String(100), nullable=False, server_default="default"),
        sa.Column("correlation_id", sa.String(255), nullable=True),
        sa.Column("duration_ms", sa.BigInteger(), nullable=True),
        sa.PrimaryKeyConstraint("job_id", name=op.f("pk_jobs")),
    )
    op.create_index(
        op.f("ix_jobs_queue_pending"),
        "jobs",
        ["queue", "status", "run_at", "priority"],
        unique=False,
    )
    op.create_index(op.f("ix_jobs_status"), "jobs", ["status"], unique=False)
    op.create_index(op.f("ix_jobs_job_type"), "jobs", ["job_type"], unique=False)
    op.create_index(op.f("ix_jobs_correlation_id"), "jobs", ["correlation_id"], unique=False)


def downgrade() -> None:
    """Revert migration: initial schema."""
    op.drop_table("jobs")
    op.drop_table("sign_jobs")
    op.drop_table("documents")
    op.drop_table("certificates")
    op.drop_table("identities")

    op.execute("DROP TYPE IF EXISTS job_status")
    op.execute("DROP TYPE IF EXISTS sign_job_status")
    op.execute("DROP TYPE IF EXISTS document_status")
    op.execute("DROP TYPE IF EXISTS certificate_status")
    op.execute("DROP TYPE IF EXISTS verification_status")
