"""Rolling grid map levels with surfel cells and surfel-based scan registration."""

__version__ = "0.1.0"

__all__ = [
    "association",
    "map_level",
    "map_level_base",
    "map_level_queries",
    "registration",
    "transforms",
]