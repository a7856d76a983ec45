import math

# Flat approximation: one degree of either axis counted as 111,320 m.
# Good near the equator, overstates east-west distance at higher latitudes.
METERS_PER_DEGREE = 111320


def planar_distance_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    return math.hypot(lat2 - lat1, lon2 - lon1) * METERS_PER_DEGREE
