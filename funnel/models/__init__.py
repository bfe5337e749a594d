from funnel.models.lead import Lead, PortalSession  # noqa: F401
from funnel.models.scan import Scan, ScanTransitionError  # noqa: F401
from funnel.models.booking import Booking  # noqa: F401
from funnel.models.activity_log import ActivityLog  # noqa: F401
