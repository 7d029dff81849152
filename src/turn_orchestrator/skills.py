# skills.py
# Demo skill registries: mock DHL shipment and CRM back ends.
# run.py wires them into SkillAgents. The engine never imports this module.
#
# Every back end instance works on its own copy of the mock data, so one
# agent changing a delivery date is never seen by another.

import copy
from typing import Any, Callable

# Date strings are ISO 8601 in UTC. Tracking numbers are 9 digits.

_SHIPMENTS: dict[str, dict[str, Any]] = {
    "123456789": {
        "trackingNumber": "123456789",
        "customerFullName": "Caridy Patino",
        "status": "Pending",
        "estimatedDeliveryDate": "2023-08-24T07:08:05.016Z",
        "actualDeliveryDate": None,
    },
}

_CUSTOMERS: dict[str, dict[str, Any]] = {
    "kathy@example.com": {
        "fullName": "Kathy Smith",
        "email": "kathy@example.com",
        "trackingNumbers": ["123456789"],
    },
}

_DELIVERY_DATES = ["2023-09-24T07:08:05.016Z", "2023-10-24T07:08:05.016Z"]


class ShipmentDesk:
    """Mock DHL tracking system."""

    def __init__(self) -> None:
        self._shipments = copy.deepcopy(_SHIPMENTS)

    def _shipment(self, tracking_number: str) -> dict[str, Any]:
        shipment = self._shipments.get(str(tracking_number).strip())
        if shipment is None:
            raise LookupError(f"No shipment found for tracking number {tracking_number}.")
        return shipment

    def track_shipment(self, tracking_number: str) -> dict[str, Any]:
        """Get the tracking info (customer, status, delivery dates) for a package."""
        return dict(self._shipment(tracking_number))

    def available_delivery_dates(self, tracking_number: str) -> list[str]:
        """Provides a list of alternate delivery dates for a shipment."""
        self._shipment(tracking_number)
        return list(_DELIVERY_DATES)

    def change_delivery_date(self, tracking_number: str, new_delivery_date: str) -> str:
        """Changes the delivery date of a shipment. Returns the tracking number."""
        shipment = self._shipment(tracking_number)
        if new_delivery_date not in _DELIVERY_DATES:
            raise ValueError(f"{new_delivery_date} is not an available delivery date.")
        shipment["estimatedDeliveryDate"] = new_delivery_date
        return shipment["trackingNumber"]

    def skills(self) -> dict[str, Callable[..., Any]]:
        return {
            "DHLTrackShipment": self.track_shipment,
            "DHLGetAvailableDeliveryDates": self.available_delivery_dates,
            "DHLChangeDeliveryDate": self.change_delivery_date,
        }


class CustomerDirectory:
    """Mock CRM."""

    def __init__(self) -> None:
        self._customers = copy.deepcopy(_CUSTOMERS)

    def find_customer(self, email: str) -> dict[str, Any]:
        """Look up a customer record, including their tracking numbers, by email."""
        customer = self._customers.get(email.strip().lower())
        if customer is None:
            raise LookupError(f"No customer found with email {email}.")
        return copy.deepcopy(customer)

    def skills(self) -> dict[str, Callable[..., Any]]:
        return {"FindCustomer": self.find_customer}


def shipment_skills() -> dict[str, Callable[..., Any]]:
    """Skills of a fresh shipment back end."""
    return ShipmentDesk().skills()


def crm_skills() -> dict[str, Callable[..., Any]]:
    return CustomerDirectory().skills()
