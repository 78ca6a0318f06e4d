from enum import Enum
from typing import Iterable, Mapping, Optional, Union


class Department(str, Enum):
    LEASING = "leasing"
    SALES = "sales"
    ADMINISTRATIVE = "administrative"
    MARKETING = "marketing"
    NEW_DEVELOPMENT = "new_development"


class DeliveryChannel(str, Enum):
    RELAY = "relay"
    DIRECT = "direct"


# Un-triaged conversations and unknown codes take the direct path.
DEFAULT_CHANNEL = DeliveryChannel.DIRECT

DEPARTMENT_CHANNELS: dict[Department, DeliveryChannel] = {
    Department.LEASING: DeliveryChannel.RELAY,
    Department.SALES: DeliveryChannel.RELAY,
    Department.ADMINISTRATIVE: DeliveryChannel.RELAY,
    Department.MARKETING: DeliveryChannel.DIRECT,
    Department.NEW_DEVELOPMENT: DeliveryChannel.DIRECT,
}


def parse_department(value: Union[str, Department, None]) -> Optional[Department]:
    if value is None or isinstance(value, Department):
        return value
    try:
        return Department(value.strip().lower())
    except ValueError:
        return None


def build_channel_map(relay_codes: Iterable[str]) -> dict[Department, DeliveryChannel]:
    """Channel map where exactly the listed departments go through the relay."""
    relay = {parse_department(code) for code in relay_codes}
    return {
        department: DeliveryChannel.RELAY if department in relay else DeliveryChannel.DIRECT
        for department in Department
    }


def select_channel(
    department: Union[str, Department, None],
    channel_map: Optional[Mapping[Department, DeliveryChannel]] = None,
) -> DeliveryChannel:
    """Pure routing decision: department -> delivery channel. Never raises."""
    channel_map = channel_map if channel_map is not None else DEPARTMENT_CHANNELS
    parsed = parse_department(department)
    if parsed is None:
        return DEFAULT_CHANNEL
    return channel_map.get(parsed, DEFAULT_CHANNEL)
