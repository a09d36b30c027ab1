"""OpenWeatherMap current weather, 2.5 API (API key required).

The current-weather endpoint has no dew point, so it is always derived.
"""
from typing import Any, Dict, Mapping, Tuple

from .models import WeatherSample
from .weather import CLEAR, CLOUDS, FOG, RAIN, SNOW, THUNDERSTORM, dew_point_or_none
from .weather_providers import WeatherProvider, direction, num, section


def condition_from_owm_id(code: int) -> str:
    group = code // 100
    if group == 2:
        return THUNDERSTORM
    if group in (3, 5):
        return RAIN
    if group == 6:
        return SNOW
    if group == 7:
        return FOG
    if code == 800:
        return CLEAR
    return CLOUDS


class OpenWeatherMapProvider(WeatherProvider):
    provider_id = 'openweathermap'
    name = 'OpenWeatherMap'
    base_url = 'https://api.openweathermap.org/data/2.5/weather'
    requires_api_key = True
    confidence = 90.0

    def build_request(self, lat: float, lon: float) -> Tuple[str, Dict[str, Any]]:
        return self.base_url, {'lat': f"{lat:.6f}", 'lon': f"{lon:.6f}", 'appid': self.api_key, 'units': 'metric'}

    def parse(self, data: Mapping[str, Any], lat: float, lon: float) -> WeatherSample:
        main = data['main']
        wind = section(data, 'wind')
        temp = float(main['temp'])
        humidity = float(main['humidity'])
        code = int(data['weather'][0]['id'])
        precip = num(section(data, 'rain'), '1h', 0.0) + num(section(data, 'snow'), '1h', 0.0)
        return WeatherSample(
            provider_id=self.provider_id,
            temp=temp,
            feels_like=num(main, 'feels_like', temp),
            humidity=humidity,
            pressure=float(main['pressure']),
            wind_speed=float(wind['speed']),
            wind_deg=direction(wind, 'deg'),
            cloud_cover=num(section(data, 'clouds'), 'all', 0.0),
            precipitation_1h=precip,
            condition=condition_from_owm_id(code),
            condition_code=code,
            fetched_at=self._now(),
            dew_point=dew_point_or_none(temp, humidity),
            wind_gust=num(wind, 'gust'),
            confidence=self.confidence,
        )
