# Table definitions; importing this package populates SQLModel.metadata for Alembic.
from .base import UUIDMixin, TimestampMixin  # noqa: F401
from .user import User  # noqa: F401
from .organization import Organization  # noqa: F401
from .project import Project  # noqa: F401
from .organization_user import OrganizationUser  # noqa: F401
from .project_user import ProjectUser  # noqa: F401
from .organization_invite import OrganizationInvite  # noqa: F401
