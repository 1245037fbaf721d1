"""
API dependencies

Authentication lives in front of this service; requests arrive with the
seller's company id in the X-Company-Id header.
"""
from typing import Optional

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from courierhub.core.database import get_db
from courierhub.core.exceptions import AccessDeniedError
from courierhub.models.company import Company


async def get_current_company(
    x_company_id: Optional[str] = Header(None, alias="X-Company-Id"),
    db: AsyncSession = Depends(get_db),
) -> Company:
    """Resolve the calling seller from the X-Company-Id header."""
    if not x_company_id or not x_company_id.isdigit():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing or invalid X-Company-Id header",
        )

    result = await db.execute(select(Company).where(Company.id == int(x_company_id)))
    company = result.scalar_one_or_none()

    if not company:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Company not found",
        )

    if not company.is_active:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Company account is disabled",
        )

    return company


def require_kyc_tier(min_tier: int):
    """Dependency factory: the company must have completed at least min_tier KYC."""

    async def checker(company: Company = Depends(get_current_company)) -> Company:
        if (company.kyc_tier or 0) < min_tier:
            raise AccessDeniedError(
                f"KYC tier {min_tier} required for this operation",
                details={"required_tier": min_tier, "current_tier": company.kyc_tier},
            )
        return company

    return checker
