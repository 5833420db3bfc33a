from datetime import datetime, timedelta
from typing import Tuple

AVG_SPEED_MPH = 55
AVG_MPG = 25
PRICE_PER_GALLON = 3.85
MILES_PER_LABEL_CHAR = 12


class Estimator:
    def estimate(self, origin: str, destination: str, departure_time: datetime, seats: int) -> Tuple[datetime, float]:
        """Return (arrival_time, cost_per_person) for a trip."""
        raise NotImplementedError


class MockEstimator(Estimator):
    """Placeholder until a mapping API is wired in: distance grows with label length."""

    def estimate(self, origin, destination, departure_time, seats):
        distance_miles = (len(origin) + len(destination)) * MILES_PER_LABEL_CHAR
        duration_min = round(distance_miles / AVG_SPEED_MPH * 60)
        total_fuel_cost = distance_miles / AVG_MPG * PRICE_PER_GALLON
        # driver shares the fuel cost too
        cost_per_person = round(total_fuel_cost / (seats + 1), 2)
        return departure_time + timedelta(minutes=duration_min), cost_per_person
