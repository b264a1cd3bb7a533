"""
Tenant Resolver

Maps the tenant reference a caller sends (id or slug) to an active Tenant
and enforces that every entity touched by a request belongs to it.
"""

import logging
from typing import Optional
from sqlalchemy import or_
from sqlalchemy.orm import Session

from ..models.tenant import Tenant, RestaurantTable
from ..utils.db_helpers import retry_storage_reads
from ..utils.errors import InvalidRequest, TenantMismatch, TenantNotFound

logger = logging.getLogger(__name__)


class TenantResolver:
    def __init__(self, db: Session):
        self.db = db

    @retry_storage_reads
    def resolve(self, tenant_ref: Optional[str]) -> Tenant:
        """Active tenant by id or slug"""
        if not tenant_ref or not str(tenant_ref).strip():
            raise InvalidRequest("tenant_id is required")

        tenant_ref = str(tenant_ref).strip()
        tenant = self.db.query(Tenant).filter(
            or_(Tenant.id == tenant_ref, Tenant.slug == tenant_ref)
        ).first()

        if not tenant or not tenant.is_active:
            logger.info(f"Unknown or inactive tenant: {tenant_ref}")
            raise TenantNotFound(f"Tenant {tenant_ref} not found")
        return tenant

    @retry_storage_reads
    def get_table(self, tenant: Tenant, table_id: str) -> RestaurantTable:
        """
        Table lookup scoped to the tenant.

        A table owned by another tenant is a TENANT_MISMATCH, an id that does
        not exist at all is an invalid request.
        """
        table = self.db.query(RestaurantTable).filter(RestaurantTable.id == table_id).first()
        if table is None:
            raise InvalidRequest(f"Unknown table {table_id}")
        if table.tenant_id != tenant.id:
            logger.warning(f"Table {table_id} requested under foreign tenant {tenant.id}")
            raise TenantMismatch(f"Table {table_id} belongs to another tenant")
        return table


def resolve_tenant(db: Session, tenant_ref: Optional[str]) -> Tenant:
    return TenantResolver(db).resolve(tenant_ref)


def ensure_same_tenant(db: Session, header_ref: Optional[str], body_ref: Optional[str]) -> Tenant:
    """
    Resolve the caller's tenant when it may be given twice.

    The identity layer sets X-Tenant-ID; a request body may also name a
    tenant. Both must resolve to the same tenant, otherwise TENANT_MISMATCH
    is raised before anything else happens.
    """
    if header_ref and body_ref:
        header_tenant = resolve_tenant(db, header_ref)
        if body_ref in (header_tenant.id, header_tenant.slug):
            return header_tenant
        raise TenantMismatch(f"Header tenant {header_ref} does not match body tenant {body_ref}")

    return resolve_tenant(db, header_ref or body_ref)
