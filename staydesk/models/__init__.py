from staydesk.models.user import User  # noqa: F401
from staydesk.models.room import Room  # noqa: F401
from staydesk.models.booking import Booking  # noqa: F401
from staydesk.models.payment import Payment  # noqa: F401
from staydesk.models.gateway_event import GatewayEvent  # noqa: F401
from staydesk.models.audit_log import AuditLog  # noqa: F401
from staydesk.models.email_log import EmailLog  # noqa: F401
