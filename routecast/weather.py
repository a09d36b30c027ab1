from dataclasses import replace
from typing import Any, Dict, List, Optional, Sequence, Tuple
import math

import numpy as np
import pandas as pd

from .config import AlertThresholds
from .models import Alert, ConsensusField, ConsensusWeather, WeatherForecast, WeatherSample


# Shared condition taxonomy every provider normalizes into.
CLEAR = 'Clear'
CLOUDS = 'Clouds'
RAIN = 'Rain'
SNOW = 'Snow'
THUNDERSTORM = 'Thunderstorm'
FOG = 'Fog'
CONDITIONS = (CLEAR, CLOUDS, RAIN, SNOW, THUNDERSTORM, FOG)

# Magnus coefficients
MAGNUS_A = 17.27
MAGNUS_B = 237.7

# Linear unit conversions metric -> imperial: (factor, offset)
_IMPERIAL = {
    'temp': (1.8, 32.0),
    'feels_like': (1.8, 32.0),
    'dew_point': (1.8, 32.0),
    'wind_speed': (2.2369363, 0.0),   # m/s -> mph
    'wind_gust': (2.2369363, 0.0),
    'pressure': (0.0295299831, 0.0),  # hPa -> inHg
    'precipitation_1h': (0.0393700787, 0.0),  # mm -> in
}


def dew_point_c(temp_c: float, humidity_pct: float) -> float:
    """Dew point via the Magnus formula: b*alpha / (a - alpha),
    alpha = ln(RH/100) + a*T / (b + T).
    """
    if humidity_pct is None or humidity_pct <= 0:
        raise ValueError('relative humidity must be > 0 for dew point')
    rh = min(float(humidity_pct), 100.0)
    alpha = math.log(rh / 100.0) + (MAGNUS_A * temp_c) / (MAGNUS_B + temp_c)
    return (MAGNUS_B * alpha) / (MAGNUS_A - alpha)


def dew_point_or_none(temp_c: Optional[float], humidity_pct: Optional[float]) -> Optional[float]:
    if temp_c is None or humidity_pct is None or humidity_pct <= 0:
        return None
    return dew_point_c(float(temp_c), float(humidity_pct))


def condition_from_text(text: str) -> str:
    """Map free-text provider conditions ("Patchy light drizzle", "Overcast") to the taxonomy."""
    t = (text or '').lower()
    if 'thunder' in t:
        return THUNDERSTORM
    if 'snow' in t or 'blizzard' in t or 'sleet' in t or 'ice pellets' in t:
        return SNOW
    if 'rain' in t or 'drizzle' in t or 'shower' in t:
        return RAIN
    if 'fog' in t or 'mist' in t or 'haze' in t:
        return FOG
    if 'cloud' in t or 'overcast' in t:
        return CLOUDS
    return CLEAR


def compute_wind_statistics(directions_deg: pd.Series) -> Dict[str, Any]:
    """
    Compute circular mean direction and variability from wind direction series (degrees).
    Variability reported as circular standard deviation in degrees, plus the population
    variance of the deviations from the circular mean (wrapped to [-180, 180)).
    Missing directions are ignored; `wind_dev` keeps the index of the readings used.
    """
    valid = directions_deg.dropna()
    dirs = valid.to_numpy(dtype=float)
    if dirs.size == 0:
        return {"wind_dir_deg": np.nan, "wind_var_deg": 180.0, "wind_dev_variance": 0.0,
                "wind_dev": pd.Series([], dtype=float)}
    radians = np.deg2rad(dirs)
    mean_sin = np.mean(np.sin(radians))
    mean_cos = np.mean(np.cos(radians))
    mean_dir = np.rad2deg(np.arctan2(mean_sin, mean_cos)) % 360.0
    R = np.sqrt(mean_sin ** 2 + mean_cos ** 2)
    if R <= 0:
        circ_std_rad = np.pi
    else:
        circ_std_rad = np.sqrt(-2.0 * np.log(min(1.0, R)))
    circ_std_deg = float(np.rad2deg(circ_std_rad))
    dev = (dirs - mean_dir + 180.0) % 360.0 - 180.0
    return {
        "wind_dir_deg": float(mean_dir),
        "wind_var_deg": circ_std_deg,
        "wind_dev_variance": float(np.mean(dev ** 2)),
        "wind_dev": pd.Series(dev, index=valid.index),
    }


# -------------------- Alerts --------------------
def generate_alerts(temp: Optional[float], wind_speed: Optional[float], precipitation_1h: Optional[float],
                    condition: Optional[str], thresholds: AlertThresholds) -> List[Alert]:
    """Threshold-based alerts on metric values."""
    alerts: List[Alert] = []

    if wind_speed is not None:
        if wind_speed >= thresholds.wind_extreme_ms:
            alerts.append(Alert('wind', 'extreme', 'Extreme Wind Warning',
                                f"Very strong winds of {round(wind_speed)} m/s. Outdoor activities not recommended."))
        elif wind_speed >= thresholds.wind_high_ms:
            alerts.append(Alert('wind', 'high', 'High Wind Advisory',
                                f"Strong winds of {round(wind_speed)} m/s. Exercise caution."))

    if temp is not None:
        if temp >= thresholds.temp_extreme_hot_c:
            alerts.append(Alert('temperature', 'extreme', 'Extreme Heat Warning',
                                f"Dangerous heat of {round(temp)}°C. Risk of heat exhaustion."))
        elif temp >= thresholds.temp_hot_c:
            alerts.append(Alert('temperature', 'medium', 'Hot Weather Advisory',
                                f"High temperature of {round(temp)}°C. Stay hydrated."))
        elif temp <= thresholds.temp_extreme_cold_c:
            alerts.append(Alert('temperature', 'extreme', 'Extreme Cold Warning',
                                f"Dangerous cold of {round(temp)}°C. Risk of hypothermia."))
        elif temp <= thresholds.temp_freezing_c:
            alerts.append(Alert('temperature', 'medium', 'Freezing Temperature',
                                f"Temperature at or below freezing ({round(temp)}°C). Watch for ice."))

    if precipitation_1h is not None and precipitation_1h > 0:
        kind = 'snow' if condition == SNOW else 'rain'
        if precipitation_1h >= thresholds.precip_extreme_mm:
            alerts.append(Alert('precipitation', 'extreme', 'Extreme Precipitation Warning',
                                f"Very heavy {kind} of {precipitation_1h:.1f}mm/h."))
        elif precipitation_1h >= thresholds.precip_heavy_mm:
            alerts.append(Alert('precipitation', 'high', 'Heavy Precipitation Alert',
                                f"Heavy {kind} of {precipitation_1h:.1f}mm/h."))
        elif precipitation_1h >= thresholds.precip_light_mm:
            alerts.append(Alert('precipitation', 'low', 'Precipitation Expected',
                                f"{kind.capitalize()} of {precipitation_1h:.1f}mm/h along this stretch."))

    if condition == THUNDERSTORM:
        alerts.append(Alert('general', 'high', 'Thunderstorm',
                            'Thunderstorms reported. Avoid exposed terrain.'))
    return alerts


def alerts_for(primary: WeatherSample, consensus: Optional[ConsensusWeather],
               thresholds: AlertThresholds) -> List[Alert]:
    if consensus is not None:
        return generate_alerts(consensus.value('temp'), consensus.value('wind_speed'),
                               consensus.value('precipitation_1h'), consensus.condition, thresholds)
    return generate_alerts(primary.temp, primary.wind_speed, primary.precipitation_1h,
                           primary.condition, thresholds)


# -------------------- Units --------------------
def _conv(name: str, v: Optional[float]) -> Optional[float]:
    if v is None or name not in _IMPERIAL:
        return v
    factor, offset = _IMPERIAL[name]
    return v * factor + offset


def convert_sample(sample: WeatherSample, units: str) -> WeatherSample:
    if units == 'metric':
        return sample
    changes = {name: _conv(name, getattr(sample, name)) for name in _IMPERIAL}
    return replace(sample, **changes)


def convert_consensus(consensus: ConsensusWeather, units: str) -> ConsensusWeather:
    if units == 'metric':
        return consensus
    fields: Dict[str, ConsensusField] = {}
    for name, f in consensus.fields.items():
        if name in _IMPERIAL:
            factor, _ = _IMPERIAL[name]
            f = replace(f, value=_conv(name, f.value), variance=f.variance * factor * factor)
        fields[name] = f
    return replace(consensus, fields=fields)


def convert_forecast(forecast: WeatherForecast, units: str) -> WeatherForecast:
    if units == 'metric':
        return forecast
    return replace(
        forecast,
        primary_sample=convert_sample(forecast.primary_sample, units) if forecast.primary_sample else None,
        all_samples=tuple(convert_sample(s, units) for s in forecast.all_samples),
        consensus=convert_consensus(forecast.consensus, units) if forecast.consensus else None,
    )


def sample_frame(samples: Sequence[WeatherSample], fields: Tuple[str, ...]) -> pd.DataFrame:
    """One row per provider, one column per numeric field."""
    rows = [{name: float(getattr(s, name)) for name in fields} for s in samples]
    return pd.DataFrame(rows, index=[s.provider_id for s in samples], columns=list(fields))
