import json
import random
from collections.abc import Callable
from datetime import datetime, timedelta

from tidings.constants import CONTENT_PRIORITY
from tidings.database import language_for_country
from tidings.types import RegionScope
from tidings.versioning import utc_now

from .base import BaseCollector, CollectedItem

WEATHER_CONDITIONS = {
    "clear": "Clear sky",
    "clouds": "Cloudy",
    "rain": "Light rain",
    "snow": "Snow showers",
    "thunderstorm": "Thunderstorms",
}


def encode_item(data: dict) -> bytes:
    return json.dumps(data, ensure_ascii=False, sort_keys=True, indent=2).encode("utf-8")


class SampleCollector(BaseCollector):
    """
    Generates plausible content locally instead of calling a provider.
    Used for development and demos.
    """

    type_aliases = ["sample"]
    content_type = "stories"

    def __init__(
        self,
        id: str,
        seed: int | None = None,
        clock: Callable[[], datetime] = utc_now,
        **kwargs,
    ):
        super().__init__(id, **kwargs)
        self.random = random.Random(seed)
        self.clock = clock

    def item_filename(self, scope: RegionScope, now: datetime, index: int) -> str:
        return f"{self.content_type}-{now:%Y%m%dT%H%M%S%f}-{index}.json"

    def fetch(self, scope: RegionScope) -> list[CollectedItem]:
        now = self.clock()
        story = {
            "title": f"Story of the day for {scope.region_code or scope.country_code}",
            "language": language_for_country(scope.country_code),
            "content": "Once upon a time...",
            "published_at": now.isoformat(),
        }
        return [
            CollectedItem(
                filename=self.item_filename(scope, now, 0),
                data=encode_item(story),
                title=story["title"],
                published_at=now,
            )
        ]


class NewsCollector(SampleCollector):

    type_aliases = ["news"]
    content_type = "news"
    default_schedule = "0 */30 * * * *"

    def fetch(self, scope: RegionScope) -> list[CollectedItem]:
        now = self.clock()
        place = scope.region_code or scope.country_code
        articles = [
            {
                "title": f"Local news for {place}",
                "content": f"Sample local story for {scope.country_code}",
                "source": "Sample Source",
                "category": "general",
                "published_at": now,
            },
            {
                "title": "Economic update",
                "content": f"Important economic information for {scope.country_code}",
                "source": "Sample Economic News",
                "category": "business",
                "published_at": now - timedelta(minutes=15),
            },
        ]
        items = []
        for index, article in enumerate(articles):
            published_at = article.pop("published_at")
            article["language"] = language_for_country(scope.country_code)
            article["country_code"] = scope.country_code
            article["region_code"] = scope.region_code
            article["published_at"] = published_at.isoformat()
            items.append(
                CollectedItem(
                    filename=self.item_filename(scope, now, index),
                    data=encode_item(article),
                    title=article["title"],
                    tags=[article["category"]],
                    published_at=published_at,
                )
            )
        return items


class WeatherCollector(SampleCollector):
    """
    Current conditions plus a five-day forecast per scope. The city shown is
    taken from the "cities" option (scope key -> name), falling back to the
    region or country code.
    """

    type_aliases = ["weather"]
    content_type = "weather"
    default_schedule = "0 */15 * * * *"
    forecast_days = 5

    def __init__(self, id: str, cities: dict[str, str] | None = None, **kwargs):
        super().__init__(id, **kwargs)
        self.cities = cities or {}

    def fetch(self, scope: RegionScope) -> list[CollectedItem]:
        now = self.clock()
        city = self.cities.get(scope.key, scope.region_code or scope.country_code)
        condition = self.random.choice(list(WEATHER_CONDITIONS))
        temperature = round(15 + self.random.random() * 20, 1)
        report = {
            "city": city,
            "country_code": scope.country_code,
            "region_code": scope.region_code,
            "temperature": temperature,
            "feels_like": round(temperature + self.random.uniform(-2, 2), 1),
            "humidity": self.random.randint(40, 90),
            "condition": condition,
            "description": WEATHER_CONDITIONS[condition],
            "timestamp": now.isoformat(),
            "forecast": self.forecast(now),
        }
        priority = (
            CONTENT_PRIORITY.HIGH
            if condition == "thunderstorm"
            else CONTENT_PRIORITY.NORMAL
        )
        return [
            CollectedItem(
                filename=self.item_filename(scope, now, 0),
                data=encode_item(report),
                title=f"Weather for {city}",
                tags=[condition],
                priority=priority,
                published_at=now,
            )
        ]

    def forecast(self, now: datetime) -> list[dict]:
        days = []
        for offset in range(1, self.forecast_days + 1):
            low = round(10 + self.random.random() * 10, 1)
            condition = self.random.choice(list(WEATHER_CONDITIONS))
            days.append(
                {
                    "date": (now + timedelta(days=offset)).date().isoformat(),
                    "min_temperature": low,
                    "max_temperature": round(low + 5 + self.random.random() * 10, 1),
                    "condition": condition,
                    "description": WEATHER_CONDITIONS[condition],
                }
            )
        return days
