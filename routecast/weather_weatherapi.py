"""WeatherAPI.com current conditions (API key required)."""
from typing import Any, Dict, Mapping, Tuple

from .models import WeatherSample
from .weather import condition_from_text, dew_point_or_none
from .weather_providers import WeatherProvider, direction, num, section

KPH_TO_MS = 1.0 / 3.6


class WeatherAPIProvider(WeatherProvider):
    provider_id = 'weatherapi'
    name = 'WeatherAPI'
    base_url = 'https://api.weatherapi.com/v1/current.json'
    requires_api_key = True
    confidence = 80.0

    def build_request(self, lat: float, lon: float) -> Tuple[str, Dict[str, Any]]:
        return self.base_url, {'key': self.api_key, 'q': f"{lat:.6f},{lon:.6f}", 'aqi': 'no'}

    def parse(self, data: Mapping[str, Any], lat: float, lon: float) -> WeatherSample:
        cur = data['current']
        temp = float(cur['temp_c'])
        humidity = float(cur['humidity'])
        cond = section(cur, 'condition')
        gust = num(cur, 'gust_kph')
        dew = num(cur, 'dewpoint_c')
        return WeatherSample(
            provider_id=self.provider_id,
            temp=temp,
            feels_like=num(cur, 'feelslike_c', temp),
            humidity=humidity,
            pressure=float(cur['pressure_mb']),
            wind_speed=float(cur['wind_kph']) * KPH_TO_MS,
            wind_deg=direction(cur, 'wind_degree'),
            cloud_cover=num(cur, 'cloud', 0.0),
            precipitation_1h=num(cur, 'precip_mm', 0.0),
            condition=condition_from_text(str(cond.get('text', ''))),
            condition_code=int(cond['code']) if cond.get('code') is not None else None,
            fetched_at=self._now(),
            dew_point=dew if dew is not None else dew_point_or_none(temp, humidity),
            wind_gust=gust * KPH_TO_MS if gust is not None else None,
            confidence=self.confidence,
        )
