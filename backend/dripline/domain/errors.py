from dataclasses import dataclass
from typing import List


@dataclass
class DomainError(Exception):
    detail: str
    title: str = "Domain Error"
    type: str = "https://dripline.dev/problems/domain-error"
    errors: List[dict] | None = None


class DeliveryError(RuntimeError):
    """A drip step could not be delivered; the enrollment backs off and retries."""


class BillingUnavailableError(RuntimeError):
    pass
