"""Audit trail for state-changing emergency and donor requests.

Entries are flushed into the caller's session, so an audit row commits or
rolls back together with the change it describes.
"""

import json
import uuid
from typing import Any, Optional, Union

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession

from bloodnode.api.middleware.rate_limit import client_ip
from bloodnode.models.audit_log import AuditLog

_MAX_USER_AGENT = 512


def _details_text(details: Union[str, dict[str, Any], None]) -> Optional[str]:
    if details is None or isinstance(details, str):
        return details
    return json.dumps(details, default=str, sort_keys=True)


async def log_audit(
    db: AsyncSession,
    *,
    action: str,
    resource: str,
    resource_id: Union[uuid.UUID, str, None] = None,
    user_id: Optional[uuid.UUID] = None,
    details: Union[str, dict[str, Any], None] = None,
    request: Optional[Request] = None,
) -> AuditLog:
    user_agent = request.headers.get("user-agent") if request is not None else None
    entry = AuditLog(
        user_id=user_id,
        action=action,
        resource=resource,
        resource_id=str(resource_id) if resource_id is not None else None,
        details=_details_text(details),
        ip_address=client_ip(request) if request is not None else None,
        user_agent=user_agent[:_MAX_USER_AGENT] if user_agent else None,
    )
    db.add(entry)
    await db.flush()
    return entry
