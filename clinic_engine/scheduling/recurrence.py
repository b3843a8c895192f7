from datetime import date

from dateutil.relativedelta import relativedelta

RECURRENCE_STEPS = {
    'daily': relativedelta(days=1),
    'weekly': relativedelta(weeks=1),
    'biweekly': relativedelta(weeks=2),
    'monthly': relativedelta(months=1),
}


def generate_recurring_dates(start_date: date, frequency: str, count: int) -> list[date]:
    normalized = frequency.strip().lower()
    if normalized not in RECURRENCE_STEPS:
        raise ValueError(f'Unsupported recurrence frequency: {frequency!r}.')
    if count < 0:
        raise ValueError('Recurrence count cannot be negative.')

    # Monthly steps are taken from the start date so the 31st does not drift to the 28th.
    return [start_date + RECURRENCE_STEPS[normalized] * index for index in range(count)]
