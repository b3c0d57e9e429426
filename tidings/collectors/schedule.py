from datetime import datetime, timedelta

MONTH_NAMES = {
    name: number
    for number, name in enumerate(
        ["JAN", "FEB", "MAR", "APR", "MAY", "JUN", "JUL", "AUG", "SEP", "OCT", "NOV", "DEC"],
        start=1,
    )
}
DAY_NAMES = {
    name: number
    for number, name in enumerate(["SUN", "MON", "TUE", "WED", "THU", "FRI", "SAT"])
}


def parse_field(
    text: str, low: int, high: int, names: dict[str, int] | None = None
) -> set[int]:
    """
    Parses one cron field (e.g. "*", "*/15", "1-5", "MON,WED", "0-30/10")
    into the set of values it allows.
    """
    values: set[int] = set()
    for part in text.upper().split(","):
        part, _, step_text = part.partition("/")
        step = int(step_text) if step_text else 1
        if step < 1:
            raise ValueError(f"Invalid step in cron field {text!r}")
        if part in ("*", "?"):
            start, end = low, high
        elif "-" in part:
            start_text, end_text = part.split("-", 1)
            start = _parse_value(start_text, names)
            end = _parse_value(end_text, names)
        else:
            start = _parse_value(part, names)
            end = high if step_text else start
        if start < low or end > high or start > end:
            raise ValueError(f"Cron field {text!r} out of range {low}-{high}")
        values.update(range(start, end + 1, step))
    return values


def _parse_value(text: str, names: dict[str, int] | None) -> int:
    if names and text in names:
        return names[text]
    if not text.isdigit():
        raise ValueError(f"Invalid cron value {text!r}")
    return int(text)


class CronSchedule:
    """
    A cron expression: either five fields (minute hour day month weekday) or
    six with a leading seconds field. When both day-of-month and weekday are
    restricted, a day matching either fires, as in classic cron.
    """

    def __init__(self, expression: str):
        self.expression = expression
        fields = expression.split()
        if len(fields) == 5:
            fields = ["0"] + fields
        if len(fields) != 6:
            raise ValueError(f"Cron expression must have 5 or 6 fields: {expression!r}")
        self.seconds = parse_field(fields[0], 0, 59)
        self.minutes = parse_field(fields[1], 0, 59)
        self.hours = parse_field(fields[2], 0, 23)
        self.days = parse_field(fields[3], 1, 31)
        self.months = parse_field(fields[4], 1, 12, MONTH_NAMES)
        # 7 is Sunday too
        self.weekdays = {d % 7 for d in parse_field(fields[5], 0, 7, DAY_NAMES)}
        self.days_restricted = fields[3] not in ("*", "?")
        self.weekdays_restricted = fields[5] not in ("*", "?")

    def __repr__(self):
        return f"<CronSchedule {self.expression!r}>"

    def day_matches(self, moment: datetime) -> bool:
        day_ok = moment.day in self.days
        weekday_ok = (moment.weekday() + 1) % 7 in self.weekdays
        if self.days_restricted and self.weekdays_restricted:
            return day_ok or weekday_ok
        return day_ok and weekday_ok

    def next_fire(self, after: datetime) -> datetime:
        """
        Returns the first matching moment strictly after the given one.
        """
        moment = after.replace(microsecond=0) + timedelta(seconds=1)
        limit = after + timedelta(days=366 * 5)
        while moment <= limit:
            if moment.month not in self.months:
                year, month = moment.year, moment.month + 1
                if month > 12:
                    year, month = year + 1, 1
                moment = moment.replace(
                    year=year, month=month, day=1, hour=0, minute=0, second=0
                )
                continue
            if not self.day_matches(moment):
                moment = (moment + timedelta(days=1)).replace(hour=0, minute=0, second=0)
                continue
            if moment.hour not in self.hours:
                moment = (moment + timedelta(hours=1)).replace(minute=0, second=0)
                continue
            if moment.minute not in self.minutes:
                moment = (moment + timedelta(minutes=1)).replace(second=0)
                continue
            if moment.second not in self.seconds:
                moment += timedelta(seconds=1)
                continue
            return moment
        raise ValueError(f"Cron expression never fires: {self.expression!r}")
