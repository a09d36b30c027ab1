"""Weather forecasts for points sampled along a GPS route."""
from .config import ServiceConfig
from .errors import RoutecastError
from .models import ForecastResult, ForecastSettings, Route, SourcePreferences
from .weather_service import WeatherForecastService, build_service

__version__ = '0.1.0'

__all__ = [
    'ForecastResult',
    'ForecastSettings',
    'Route',
    'RoutecastError',
    'ServiceConfig',
    'SourcePreferences',
    'WeatherForecastService',
    'build_service',
]
