"""Matching of new requests with nearby professionals."""

from math import radians, sin, cos, sqrt, atan2
from glossed.models import User

DEFAULT_RADIUS_KM = 20.0


def distance(lat1, lon1, lat2, lon2):
    """Calculate distance in km between two coordinates using Haversine formula."""
    R = 6371  # Earth's radius in km
    lat1, lon1, lat2, lon2 = map(radians, [lat1, lon1, lat2, lon2])
    dlat = lat2 - lat1
    dlon = lon2 - lon1
    a = sin(dlat/2)**2 + cos(lat1) * cos(lat2) * sin(dlon/2)**2
    c = 2 * atan2(sqrt(a), sqrt(1-a))
    return R * c


def offers_requested_service(pro_services, requested_services) -> bool:
    """True when any professional service overlaps any requested one.
    
    Labels are compared case-insensitively and a substring match either
    way counts ('Nails' matches 'Gel nails').
    """
    for offered in pro_services or []:
        offered = offered.strip().lower()
        if not offered:
            continue
        for wanted in requested_services or []:
            wanted = wanted.strip().lower()
            if wanted and (offered in wanted or wanted in offered):
                return True
    return False


def find_matching_professionals(service_request):
    """Return professionals in range of the request who offer its services."""
    if service_request.latitude is None or service_request.longitude is None:
        return []
    
    requested = service_request.services or [service_request.service]
    candidates = User.query.filter(
        User.is_pro.is_(True),
        User.id != service_request.client_id,
        User.latitude.isnot(None),
        User.longitude.isnot(None),
    ).all()
    
    matches = []
    for pro in candidates:
        dist = distance(
            service_request.latitude, service_request.longitude,
            pro.latitude, pro.longitude
        )
        if dist <= (pro.radius_km or DEFAULT_RADIUS_KM) and offers_requested_service(pro.services, requested):
            matches.append(pro)
    return matches
