from ..domain.errors import NotFoundError
from ..domain.repositories import InstitutionRegistry


async def lookup_institution(registry: InstitutionRegistry, *, code: str) -> str:
    """Display name suggestion for a code; never consulted by the booking path."""
    name = await registry.lookup_display_name(code.strip())
    if name is None:
        raise NotFoundError("institution not found")
    return name
