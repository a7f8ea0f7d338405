SCHEDULED = "SCHEDULED"
COMPLETED = "COMPLETED"
CANCELED = "CANCELED"
NO_SHOW = "NO_SHOW"

STATUSES = {SCHEDULED, COMPLETED, CANCELED, NO_SHOW}
