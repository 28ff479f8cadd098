from fastapi import APIRouter, Depends, HTTPException, Path, status
from sqlalchemy.ext.asyncio import AsyncSession

from ..deps import get_session
from ..domain.errors import NotFoundError
from ..infrastructure.repositories import SqlAlchemyInstitutionRepository
from ..schemas import INSTITUTION_CODE_PATTERN, InstitutionLookup
from ..usecases import institutions as institution_usecase

router = APIRouter(prefix="/api/institutions", tags=["institutions"])


@router.get("/{code}", response_model=InstitutionLookup)
async def lookup_institution(
    code: str = Path(..., pattern=INSTITUTION_CODE_PATTERN),
    session: AsyncSession = Depends(get_session),
) -> InstitutionLookup:
    registry = SqlAlchemyInstitutionRepository(session)
    try:
        name = await institution_usecase.lookup_institution(registry, code=code)
    except NotFoundError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="institution not found, please enter the school name manually",
        )
    return InstitutionLookup(code=code, name=name)
