import math
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Optional

EARTH_RADIUS_KM = 6371


@dataclass(frozen=True, slots=True)
class Coordinates:
    """Точка (lat, lon)."""
    lat: float
    lon: float

    @classmethod
    def from_api(cls, raw: Any) -> Optional["Coordinates"]:
        """
        Разобрать координаты из ответа backend.
        Принимает ключи lat/latitude и lon/lng/longitude; None если чего-то нет.
        """
        if not isinstance(raw, dict):
            return None
        lat = _to_float(raw.get("lat", raw.get("latitude")))
        lon = _to_float(raw.get("lon", raw.get("lng", raw.get("longitude"))))
        if lat is None or lon is None:
            return None
        return cls(lat=lat, lon=lon)


def _to_float(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


# Haversine formula to calculate distance between two lat/lon points
@lru_cache(maxsize=1000)
def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Вычисляет расстояние между двумя точками на Земле по формуле Haversine (км).
    Результаты кешируются для оптимизации.
    """
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlambda = math.radians(lon2 - lon1)

    a = math.sin(dphi / 2)**2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2)**2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return EARTH_RADIUS_KM * c


def distance_m(a: Coordinates, b: Coordinates) -> float:
    """Расстояние между точками в метрах."""
    return haversine_distance(a.lat, a.lon, b.lat, b.lon) * 1000
