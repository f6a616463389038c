"""Models package."""

from .user import User
from .template import Template
from .credit_reservation import CreditReservation
from .credit_ledger import CreditTransaction
from .thumbnail import Thumbnail
from .subscription import Subscription
