# app/shared/geo.py
from math import radians, cos, sin, asin, sqrt, degrees
from typing import List, Optional, Sequence, Tuple

EARTH_RADIUS_KM = 6371

# Velocidad media en línea recta por tipo de vehículo (km/h)
VEHICLE_SPEEDS_KMH = {
    "bicycle": 15,
    "scooter": 25,
    "motorcycle": 35,
    "car": 30,
}
URBAN_TRAFFIC_FACTOR = 0.7


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Distancia en km entre dos puntos (gran círculo)"""
    lon1, lat1, lon2, lat2 = map(radians, [lon1, lat1, lon2, lat2])
    dlon = lon2 - lon1
    dlat = lat2 - lat1
    a = sin(dlat / 2) ** 2 + cos(lat1) * cos(lat2) * sin(dlon / 2) ** 2
    c = 2 * asin(sqrt(a))
    return EARTH_RADIUS_KM * c


def bounding_box(
    lat: float, lng: float, radius_km: float
) -> Tuple[float, float, List[Tuple[float, float]]]:
    """
    Caja envolvente del círculo de radio dado: (min_lat, max_lat, rangos_lng).

    La latitud se recorta a [-90, 90]. La longitud se devuelve como uno o dos
    rangos: si la caja cruza el antimeridiano (±180°) se parte en dos, y si
    alcanza un polo cubre todas las longitudes.
    """
    lat_delta = degrees(radius_km / EARTH_RADIUS_KM)
    min_lat = max(lat - lat_delta, -90.0)
    max_lat = min(lat + lat_delta, 90.0)

    cos_lat = max(cos(radians(lat)), 1e-6)
    lng_delta = degrees(radius_km / (EARTH_RADIUS_KM * cos_lat))
    if min_lat <= -90.0 or max_lat >= 90.0 or lng_delta >= 180.0:
        return min_lat, max_lat, [(-180.0, 180.0)]

    min_lng = lng - lng_delta
    max_lng = lng + lng_delta
    if min_lng < -180.0:
        return min_lat, max_lat, [(min_lng + 360.0, 180.0), (-180.0, max_lng)]
    if max_lng > 180.0:
        return min_lat, max_lat, [(min_lng, 180.0), (-180.0, max_lng - 360.0)]
    return min_lat, max_lat, [(min_lng, max_lng)]


def path_length_km(points: Sequence[Tuple[float, float]]) -> float:
    total = 0.0
    for (lat1, lng1), (lat2, lng2) in zip(points, points[1:]):
        total += haversine_km(lat1, lng1, lat2, lng2)
    return total


def straight_line_minutes(distance_km: float, vehicle_type: Optional[str], default_speed_kmh: float) -> int:
    """Minutos estimados a partir de la distancia en línea recta"""
    if vehicle_type in VEHICLE_SPEEDS_KMH:
        speed = VEHICLE_SPEEDS_KMH[vehicle_type] * URBAN_TRAFFIC_FACTOR
    else:
        speed = default_speed_kmh
    if speed <= 0:
        speed = default_speed_kmh
    minutes = distance_km / speed * 60
    return max(1, int(round(minutes)))
