"""Cross-provider consensus for one route point.

Per numeric field: mean and population variance (ddof=0) across the providers
that answered. Wind direction uses the circular mean, and its variance is the
population variance of the deviations from that mean wrapped to [-180, 180).

Agreement: each field with a reference scale gets
`clamp(100 * (1 - variance / scale), 0, 100)`; `agreement_score` is the mean of
those field scores. The scales are fixed constants (units squared) so scores are
reproducible across requests:

    temp, feels_like    25   (°C)²   ~ 5 °C spread scores 0
    wind_speed           9   (m/s)²
    humidity           100   (%)²
    pressure            16   (hPa)²
    cloud_cover        400   (%)²
    precipitation_1h     4   (mm)²

Outliers need at least three sources: a provider is an outlier when any of its
values lies more than two population standard deviations from the field mean.
"""
from __future__ import annotations

import logging
from collections import Counter
from typing import Dict, List, Optional, Sequence

import numpy as np

from .errors import ConsensusError
from .models import ConsensusField, ConsensusWeather, WeatherSample
from .weather import compute_wind_statistics, sample_frame

log = logging.getLogger('routecast.consensus')

NUMERIC_FIELDS = (
    'temp',
    'feels_like',
    'humidity',
    'pressure',
    'wind_speed',
    'wind_deg',
    'cloud_cover',
    'precipitation_1h',
)
LINEAR_FIELDS = tuple(f for f in NUMERIC_FIELDS if f != 'wind_deg')

REFERENCE_SCALES: Dict[str, float] = {
    'temp': 25.0,
    'feels_like': 25.0,
    'wind_speed': 9.0,
    'humidity': 100.0,
    'pressure': 16.0,
    'cloud_cover': 400.0,
    'precipitation_1h': 4.0,
}
OUTLIER_SIGMA = 2.0
MIN_SOURCES_FOR_OUTLIERS = 3


def field_score(variance: float, reference_scale: float) -> float:
    return float(np.clip(100.0 * (1.0 - variance / reference_scale), 0.0, 100.0))


class ConsensusAggregator:
    def __init__(self, priority: Sequence[str] = (), reference_scales: Optional[Dict[str, float]] = None):
        self.priority = list(priority)
        self.reference_scales = dict(REFERENCE_SCALES if reference_scales is None else reference_scales)

    def _rank(self, provider_id: str, order: List[str]) -> int:
        if provider_id in self.priority:
            return self.priority.index(provider_id)
        return len(self.priority) + order.index(provider_id)

    def _vote(self, samples: Sequence[WeatherSample]) -> str:
        order = [s.provider_id for s in samples]
        counts = Counter(s.condition for s in samples)
        top = max(counts.values())
        tied = [c for c, n in counts.items() if n == top]
        if len(tied) == 1:
            return tied[0]

        def best_rank(cond: str) -> int:
            return min(self._rank(s.provider_id, order) for s in samples if s.condition == cond)

        return min(tied, key=best_rank)

    def aggregate(self, samples: Sequence[WeatherSample]) -> ConsensusWeather:
        if not samples:
            raise ConsensusError('No provider returned data for this point')
        sources = tuple(s.provider_id for s in samples)
        df = sample_frame(samples, NUMERIC_FIELDS)

        linear = df[list(LINEAR_FIELDS)]
        means = linear.mean()
        variances = linear.var(ddof=0).fillna(0.0)
        wind = compute_wind_statistics(df['wind_deg'])

        fields: Dict[str, ConsensusField] = {}
        for name in NUMERIC_FIELDS:
            contributing = sources
            if name == 'wind_deg':
                value, var = wind['wind_dir_deg'], wind['wind_dev_variance']
                contributing = tuple(wind['wind_dev'].index)
            else:
                value, var = float(means[name]), float(variances[name])
            if len(contributing) <= 1:
                var = 0.0
            fields[name] = ConsensusField(value=value, variance=var, contributing_sources=contributing)

        scores = {name: field_score(fields[name].variance, scale)
                  for name, scale in self.reference_scales.items() if name in fields}
        agreement = float(np.mean(list(scores.values()))) if scores else 100.0

        outliers: List[str] = []
        if len(samples) >= MIN_SOURCES_FOR_OUTLIERS:
            flagged = set()
            for name in LINEAR_FIELDS:
                std = float(np.sqrt(variances[name]))
                if std <= 0:
                    continue
                z = (linear[name] - means[name]).abs() / std
                flagged.update(z[z > OUTLIER_SIGMA].index)
            wind_std = float(np.sqrt(wind['wind_dev_variance']))
            if wind_std > 0:
                z = wind['wind_dev'].abs() / wind_std
                flagged.update(z[z > OUTLIER_SIGMA].index)
            outliers = [pid for pid in sources if pid in flagged]
            if outliers:
                log.info('[CONSENSUS] outlier sources=%s', outliers)

        return ConsensusWeather(
            fields=fields,
            condition=self._vote(samples),
            agreement_score=agreement,
            field_scores=scores,
            outlier_sources=tuple(outliers),
        )
