from authcore.tenants.models import Tenant  # noqa: F401
from authcore.auth.models import User  # noqa: F401
from authcore.roles.models import Role, UserRole  # noqa: F401
from authcore.governance.models import Action, Permission, Resource  # noqa: F401
