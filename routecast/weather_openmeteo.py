"""Open-Meteo current weather (no API key).

WMO weather codes are folded into the shared condition taxonomy; the API's
wind speed is requested in m/s directly.
"""
from typing import Any, Dict, Mapping, Tuple

from .models import WeatherSample
from .weather import CLEAR, CLOUDS, FOG, RAIN, SNOW, THUNDERSTORM, dew_point_or_none
from .weather_providers import WeatherProvider, direction, num

CURRENT_FIELDS = (
    'temperature_2m',
    'relative_humidity_2m',
    'apparent_temperature',
    'precipitation',
    'weather_code',
    'cloud_cover',
    'pressure_msl',
    'wind_speed_10m',
    'wind_direction_10m',
    'wind_gusts_10m',
)


def condition_from_wmo(code: int) -> str:
    if code in (0, 1):
        return CLEAR
    if code in (2, 3):
        return CLOUDS
    if code in (45, 48):
        return FOG
    if 51 <= code <= 67 or 80 <= code <= 82:
        return RAIN
    if 71 <= code <= 77 or code in (85, 86):
        return SNOW
    if 95 <= code <= 99:
        return THUNDERSTORM
    return CLEAR


class OpenMeteoProvider(WeatherProvider):
    provider_id = 'open-meteo'
    name = 'Open-Meteo'
    base_url = 'https://api.open-meteo.com/v1/forecast'
    requires_api_key = False
    confidence = 85.0

    def build_request(self, lat: float, lon: float) -> Tuple[str, Dict[str, Any]]:
        params = {
            'latitude': f"{lat:.6f}",
            'longitude': f"{lon:.6f}",
            'current': ','.join(CURRENT_FIELDS),
            'wind_speed_unit': 'ms',
            'timezone': 'auto',
        }
        return self.base_url, params

    def parse(self, data: Mapping[str, Any], lat: float, lon: float) -> WeatherSample:
        cur = data['current']
        temp = float(cur['temperature_2m'])
        humidity = float(cur['relative_humidity_2m'])
        code = int(cur['weather_code'])
        return WeatherSample(
            provider_id=self.provider_id,
            temp=temp,
            feels_like=num(cur, 'apparent_temperature', temp),
            humidity=humidity,
            pressure=float(cur['pressure_msl']),
            wind_speed=float(cur['wind_speed_10m']),
            wind_deg=direction(cur, 'wind_direction_10m'),
            cloud_cover=num(cur, 'cloud_cover', 0.0),
            precipitation_1h=num(cur, 'precipitation', 0.0),
            condition=condition_from_wmo(code),
            condition_code=code,
            fetched_at=self._now(),
            dew_point=dew_point_or_none(temp, humidity),
            wind_gust=num(cur, 'wind_gusts_10m'),
            confidence=self.confidence,
        )
