# Models package — import all models here so Alembic can discover them.

from coachhub.models.user import User  # noqa: F401
from coachhub.models.coach_profile import CoachProfile  # noqa: F401
from coachhub.models.prospect import Prospect  # noqa: F401
from coachhub.models.prospect_history import ProspectStatusHistory  # noqa: F401
from coachhub.models.payment import ProspectPayment  # noqa: F401
from coachhub.models.calendar import (  # noqa: F401
    AdminCalendar,
    CalendarBooking,
    CalendarSlot,
)
from coachhub.models.survey import (  # noqa: F401
    Survey,
    SurveyOption,
    SurveyQuestion,
    SurveySubmission,
)
from coachhub.models.stripe_event import StripeEvent  # noqa: F401
from coachhub.models.audit import AuditEvent  # noqa: F401
