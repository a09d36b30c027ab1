"""Visual Crossing timeline API, `currentConditions` block (API key required).

Metric unit group reports wind in km/h; converted to m/s here.
"""
from typing import Any, Dict, Mapping, Tuple

from .models import WeatherSample
from .weather import condition_from_text, dew_point_or_none
from .weather_providers import WeatherProvider, direction, num

KPH_TO_MS = 1.0 / 3.6


class VisualCrossingProvider(WeatherProvider):
    provider_id = 'visual-crossing'
    name = 'Visual Crossing'
    base_url = 'https://weather.visualcrossing.com/VisualCrossingWebServices/rest/services/timeline'
    requires_api_key = True
    confidence = 80.0

    def build_request(self, lat: float, lon: float) -> Tuple[str, Dict[str, Any]]:
        url = f"{self.base_url}/{lat:.6f},{lon:.6f}/today"
        params = {'unitGroup': 'metric', 'key': self.api_key, 'include': 'current', 'contentType': 'json'}
        return url, params

    def parse(self, data: Mapping[str, Any], lat: float, lon: float) -> WeatherSample:
        cur = data['currentConditions']
        temp = float(cur['temp'])
        humidity = float(cur['humidity'])
        gust = num(cur, 'windgust')
        dew = num(cur, 'dew')
        # `icon` is a stable keyword set ("partly-cloudy-day", "thunder-rain"); fall back to it
        text = str(cur.get('conditions') or cur.get('icon') or '')
        return WeatherSample(
            provider_id=self.provider_id,
            temp=temp,
            feels_like=num(cur, 'feelslike', temp),
            humidity=humidity,
            pressure=float(cur['pressure']),
            wind_speed=float(cur['windspeed']) * KPH_TO_MS,
            wind_deg=direction(cur, 'winddir'),
            cloud_cover=num(cur, 'cloudcover', 0.0),
            precipitation_1h=num(cur, 'precip', 0.0),
            condition=condition_from_text(text),
            condition_code=None,
            fetched_at=self._now(),
            dew_point=dew if dew is not None else dew_point_or_none(temp, humidity),
            wind_gust=gust * KPH_TO_MS if gust is not None else None,
            confidence=self.confidence,
        )
