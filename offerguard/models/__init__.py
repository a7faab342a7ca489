# offerguard/models/__init__.py
# Import all models here so SQLAlchemy registers them into Base.metadata.

from offerguard.models.venue import Venue  # noqa: F401
from offerguard.models.offer import Offer, RedemptionMode  # noqa: F401

from offerguard.models.redemption import (  # noqa: F401
    Redemption,
    RedemptionEvent,
    RedemptionSlot,
    RedemptionStatus,
)
from offerguard.models.device import DeviceLink  # noqa: F401

from offerguard.models.staff import RosterEntry, StaffSession  # noqa: F401
from offerguard.models.staff_qr import OnboardQR, QRToken, StaffQR  # noqa: F401
from offerguard.models.qr_binding import QRBinding  # noqa: F401

from offerguard.models.audit import AuditLog  # noqa: F401
