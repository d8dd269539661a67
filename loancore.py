# Copyright (C) Inco - All Rights Reserved.
#
# Unauthorized copying of this file, via any medium, is strictly prohibited. Proprietary and confidential.
#
# [LOANCORE]
#
# Accounting engine for intercompany and bank loans booked in the treasury spreadsheets. It was born from the
# consolidation of four generations of spreadsheet plugins, each one with its own copy of the accrual routines, its
# own notion of a contract and its own ledger format. They disagreed on day counts, on how two interest legs combine,
# and on when a contract was considered settled. This module is the single engine left standing. Older record
# formats are read through the adapters in the "Migration" section, never by the core.
#
# The engine works in four layers:
#
#   1. Day count and rate conversion. Pure functions.
#
#   2. Rate resolution. Each interest leg (FIXED, MANUAL, CDI or PTAX) becomes an effective rate for a period. Legs
#      combine multiplicatively.
#
#   3. Ledger replay. Balances are never read from a contract. They are a left fold over the payment ledger, starting
#      from the principal at the contract start. This is what makes backdated payments safe.
#
#   4. Projections. Accrual rows, in origin currency and in BRL under two FX tracks, and fixed amortization schedules.
#      Projections are always re-derivable from a contract and its ledger.
#
# [WEAKNESSES]
#
#   • BUS/252 counts calendar days, exactly like every plugin generation did. There is no business day calendar here.
#     A warning is logged whenever a contract uses this basis.
#
#   • A MIXED allocation carries a caller supplied interest portion. When it exceeds the interest pending at the
#     payment date the portion is clamped, and the difference goes to principal. It could arguably be rejected.
#
#   • Collaborators (FX rates, rate curves) are synchronous objects. The caller owns timeouts.
#
#   • The engine rounds on output only. Rows should not be fed back as inputs.
#
#   • Amortization schedules are bookkept in cents. Under SAC with a very small rate the interest of consecutive
#     installments may round to the same cent, and the last installment absorbs the principal residual of the level
#     amortization. Payments are then not strictly decreasing, only within a few cents.
#

'''
Loan accounting core, Loancore.

Calculates interest accrual schedules, payment ledger reconciliations and fixed amortization schedules (PRICE, SAC,
BULLET) for loans denominated in BRL or in a foreign currency. Foreign currency loans are projected into BRL under
two tracks: the rate fixed on the contract, and the PTAX mark-to-market rate of each period.
'''

# Python.
import re
import copy
import types
import typing as t
import decimal
import logging
import datetime
import functools
import threading
import dataclasses
import unicodedata
import importlib.metadata

# Libs.
import typeguard
import dateutil.parser
import dateutil.relativedelta

# Loancore version (http://versioningit.readthedocs.io/en/stable/runtime-version.html).
__version__ = importlib.metadata.version('loancore') if 'loancore' in importlib.metadata.packages_distributions() else 'DEV'

# Logger object.
_LOG = logging.getLogger('loancore')

# Zero as decimal.
_0 = decimal.Decimal()

# One as decimal.
_1 = decimal.Decimal(1)

# One hundred as decimal.
_100 = decimal.Decimal(100)

# Centi factor.
_CENTI = decimal.Decimal('0.01')

# A balance at or below this value means the contract is settled.
_EPSILON = _CENTI

# A day.
_DAY = datetime.timedelta(days=1)

# Separators and other non alphanumeric characters of a legacy key or enumeration value.
_RE_SLUGY = re.compile(r'[^a-z0-9]')

# Day count conventions.
_DAY_COUNT = t.Literal['30/360', 'ACT/365', 'ACT/360', 'BUS/252']

# Interest compounding methods.
_COMPOUNDING = t.Literal['EXPONENTIAL', 'LINEAR']

# Output rounding modes.
_ROUNDING = t.Literal['HALF_UP', 'HALF_EVEN']

# Rate indexers.
_INDEXER = t.Literal['FIXED', 'CDI', 'PTAX', 'MANUAL']

# Role of an interest leg. Informative, all legs compose the period rate.
_LEG_ROLE = t.Literal['RATE', 'ADJUSTMENT']

# Loan direction: taken (a liability) or given (an asset).
_DIRECTION = t.Literal['BORROWED', 'LENT']

# Contract status.
_STATUS = t.Literal['ACTIVE', 'PAID', 'OVERDUE', 'RENEGOTIATED']

# Ledger entry types.
_ENTRY_TYPE = t.Literal['CREATION', 'PAYMENT']

# Payment allocation policies.
_ALLOCATION = t.Literal['AUTO', 'INTEREST_ONLY', 'PRINCIPAL_ONLY', 'MIXED']

# Accrual frequencies.
_FREQUENCY = t.Literal['DAILY', 'MONTHLY', 'ANNUAL']

# FX rate sources. AUTO prefers MANUAL rates over PTAX.
_FX_SOURCE = t.Literal['MANUAL', 'PTAX', 'AUTO']

# FX conversion modes of accrual rows: the rate of the period end, of the end of its month, or of its year.
_FX_MODE = t.Literal['DAILY', 'MONTHLY', 'ANNUAL']

# Indexer resolution modes: annual curve rate, or integration of daily indexes.
_RATE_MODE = t.Literal['BASE', 'DAILY']

# Amortization systems.
_SYSTEM = t.Literal['PRICE', 'SAC', 'BULLET', 'COMPOUND_ONLY']

# Grace period types.
_GRACE = t.Literal['INTEREST_ONLY', 'FULL']

# Installment periodicities.
_PERIODICITY = t.Literal['MONTHLY', 'QUARTERLY', 'SEMIANNUAL', 'ANNUAL']

# Payment flows.
_FLOW = t.Literal['SCHEDULED', 'FLEXIBLE', 'BULLET', 'ACCRUAL_ONLY']

# Days in a year, per day count convention.
_YEAR_BASIS = {'30/360': 360, 'ACT/365': 365, 'ACT/360': 360, 'BUS/252': 252}

# Decimal rounding, per output rounding mode.
_ROUNDING_MODES = {'HALF_UP': decimal.ROUND_HALF_UP, 'HALF_EVEN': decimal.ROUND_HALF_EVEN}

# Months in an installment period.
_PERIODICITY_MONTHS = {'MONTHLY': 1, 'QUARTERLY': 3, 'SEMIANNUAL': 6, 'ANNUAL': 12}

# Length of an accrual period.
_FREQUENCY_STEP = {
    'DAILY': dateutil.relativedelta.relativedelta(days=1),
    'MONTHLY': dateutil.relativedelta.relativedelta(months=1),
    'ANNUAL': dateutil.relativedelta.relativedelta(years=1)
}

# Formula layer sentinels.
NOT_AVAILABLE = '#N/A'
DATE_ERROR = '#DATE!'
RATE_ERROR = '#RATE!'
ERROR = '#ERROR'
NAME_ERROR = '#NAME?'

# Helpers. {{{
@typeguard.typechecked
def _date_range(start_date: datetime.date, end_date: datetime.date) -> t.Generator[datetime.date, None, None]:
    iterator = start_date

    while iterator < end_date:
        yield iterator

        iterator += _DAY

def _quantizer(rounding: str) -> t.Callable[[decimal.Decimal], decimal.Decimal]:
    return functools.partial(decimal.Decimal.quantize, exp=_CENTI, rounding=_ROUNDING_MODES[rounding])

def _slugy(value: t.Any) -> str:
    '''
    Reduces a legacy key or value to lower case ASCII letters and digits.

    >>> _slugy('Principal Origem')
    'principalorigem'
    >>> _slugy('Diário')
    'diario'
    '''

    value = unicodedata.normalize('NFKD', str(value))
    value = value.encode('ASCII', 'ignore').decode()

    return _RE_SLUGY.sub('', value.lower())

def _to_decimal(value: t.Any) -> decimal.Decimal:
    '''
    Converts numbers, and numeric strings in either notation, to decimal.

    >>> _to_decimal('1.234.567,89')
    Decimal('1234567.89')
    >>> _to_decimal('5.20')
    Decimal('5.20')
    >>> _to_decimal(12)
    Decimal('12')
    '''

    if isinstance(value, decimal.Decimal):
        return value

    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        return decimal.Decimal(str(value))

    txt = str(value).strip().replace(' ', '')

    if ',' in txt:
        txt = txt.replace('.', '').replace(',', '.')

    try:
        return decimal.Decimal(txt)

    except decimal.InvalidOperation as exc:
        raise ValueError(f'invalid number "{value}"') from exc

def _to_date(value: t.Any) -> datetime.date:
    '''
    Converts ISO strings, and day first legacy strings, to dates.

    >>> _to_date('2025-01-31')
    datetime.date(2025, 1, 31)
    >>> _to_date('31/01/2025')
    datetime.date(2025, 1, 31)
    '''

    if isinstance(value, datetime.datetime):
        return value.date()

    elif isinstance(value, datetime.date):
        return value

    txt = str(value).strip()

    try:
        return datetime.date.fromisoformat(txt)

    except ValueError:
        return dateutil.parser.parse(txt, dayfirst=True).date()

def _check_abort(abort: t.Optional[threading.Event]) -> None:
    if abort is not None and abort.is_set():
        raise BuildCancelled('build cancelled by the caller')
# }}}

# Public API. Errors. {{{
class LoanError(Exception):
    '''Base class of all loan engine errors.'''

class ContractNotFound(LoanError):
    pass

class InvalidDateRange(LoanError, ValueError):
    pass

class MissingRateData(LoanError):
    '''An indexer needs curve or FX data, and there is no applicable fallback.'''

class AllocationError(LoanError, ValueError):
    '''Inconsistent payment inputs.'''

class ConversionUnavailable(LoanError):
    '''No FX rate, cached or fixed by the contract, to convert an amount.'''

class BuildCancelled(LoanError):
    pass

class LedgerConflict(LoanError):
    '''The ledger of a contract changed between a snapshot and an append based on it.'''

class ValidationError(LoanError, ValueError):
    '''A contract, or a payment, failed validation. All the messages are kept in "errors".'''

    def __init__(self, errors: t.Iterable[str]):
        self.errors = list(errors)

        super().__init__('; '.join(self.errors))
# }}}

# Public API. Day count and rate conversion. {{{
@dataclasses.dataclass(frozen=True)
class DayCount:
    days: int = 0

    year: int = 360

    @property
    def fraction(self) -> decimal.Decimal:
        return decimal.Decimal(self.days) / decimal.Decimal(self.year)

@typeguard.typechecked
def day_count_fraction(start: datetime.date, end: datetime.date, basis: _DAY_COUNT = '30/360') -> DayCount:
    '''
    Counts the days between two dates under a day count convention.

    In 30/360 every month has thirty days. The day of the month of each date is capped at thirty before subtracting.

    >>> from datetime import date
    >>>
    >>> day_count_fraction(date(2025, 1, 1), date(2025, 2, 1), '30/360')
    DayCount(days=30, year=360)
    >>> day_count_fraction(date(2025, 1, 31), date(2025, 3, 31), '30/360')
    DayCount(days=60, year=360)

    The other conventions use the calendar difference. Note that BUS/252 does not skip weekends nor holidays.

    >>> day_count_fraction(date(2025, 1, 1), date(2025, 2, 1), 'ACT/365')
    DayCount(days=31, year=365)
    >>> day_count_fraction(date(2025, 1, 1), date(2025, 2, 1), 'BUS/252')
    DayCount(days=31, year=252)
    '''

    if basis == '30/360':
        days = (end.year - start.year) * 360 + (end.month - start.month) * 30 + min(end.day, 30) - min(start.day, 30)

    else:
        days = (end - start).days

    return DayCount(days=days, year=_YEAR_BASIS[basis])

@functools.lru_cache(maxsize=4096)
@typeguard.typechecked
def annual_to_effective(rate: decimal.Decimal, compounding: _COMPOUNDING, basis: _DAY_COUNT, days: int, percent: bool = False) -> decimal.Decimal:
    '''
    Converts an annual rate into the effective rate of a span of days.

    >>> from decimal import Decimal
    >>>
    >>> round(annual_to_effective(Decimal('0.12'), 'EXPONENTIAL', '30/360', 30), 5)
    Decimal('0.00949')
    >>> annual_to_effective(Decimal('0.12'), 'LINEAR', '30/360', 30)
    Decimal('0.01')

    Rates can be given in percent.

    >>> annual_to_effective(Decimal('12'), 'LINEAR', '30/360', 30, percent=True)
    Decimal('0.01')

    Empty, or negative, spans accrue nothing.

    >>> annual_to_effective(Decimal('0.12'), 'EXPONENTIAL', '30/360', -5)
    Decimal('0')
    '''

    if percent:
        rate = rate / _100

    if days <= 0 or not rate:
        return _0

    if compounding == 'EXPONENTIAL':
        return (_1 + rate) ** (decimal.Decimal(days) / decimal.Decimal(_YEAR_BASIS[basis])) - _1

    else:
        return rate * decimal.Decimal(days) / decimal.Decimal(_YEAR_BASIS[basis])

@typeguard.typechecked
def periodic_rate(annual: decimal.Decimal, periodicity: _PERIODICITY = 'MONTHLY', compounding: _COMPOUNDING = 'EXPONENTIAL', percent: bool = False) -> decimal.Decimal:
    '''Converts an annual rate into the rate of an installment period, on a 30/360 basis.'''

    return annual_to_effective(annual, compounding, '30/360', _PERIODICITY_MONTHS[periodicity] * 30, percent)

@typeguard.typechecked
def calculate_pmt(principal: decimal.Decimal, rate: decimal.Decimal, term: int) -> decimal.Decimal:
    '''
    Level payment of a loan with TERM installments at a periodic RATE.

    >>> from decimal import Decimal
    >>>
    >>> calculate_pmt(Decimal(1200), Decimal(0), 12)
    Decimal('100')
    >>> round(calculate_pmt(Decimal(1000), Decimal('0.01'), 12), 2)
    Decimal('88.85')
    '''

    if term < 1:
        raise ValueError('"term" must be greater than, or equal to, one')

    if not rate:
        return principal / decimal.Decimal(term)

    fac = (_1 + rate) ** term

    return principal * rate * fac / (fac - _1)

@typeguard.typechecked
def combine_rates(rates: t.Sequence[decimal.Decimal]) -> decimal.Decimal:
    '''
    Combines period rates multiplicatively.

    >>> from decimal import Decimal
    >>>
    >>> combine_rates([Decimal('0.05'), Decimal('0.05')])
    Decimal('0.1025')
    >>> combine_rates([])
    Decimal('0')
    '''

    fac = _1

    for x in rates:
        fac = fac * (_1 + x)

    return fac - _1
# }}}

# Public API. Rate collaborators, FX and curves. {{{
class BackendError(Exception):
    pass

@dataclasses.dataclass
class DailyIndex:
    date: datetime.date = datetime.date.min

    value: decimal.Decimal = _0

class FxRateBackend:
    def get_rate(self, date: datetime.date, currency: str, source: _FX_SOURCE = 'AUTO') -> t.Optional[decimal.Decimal]:
        '''
        Returns the price, in BRL, of one unit of a currency on a date; or None.

        With the AUTO source, a MANUAL rate outranks the PTAX of the same date.
        '''

        raise NotImplementedError()

    @typeguard.typechecked
    def convert(self, value: decimal.Decimal, from_currency: str, to_currency: str, date: datetime.date) -> decimal.Decimal:
        '''
        Converts a value between currencies, through BRL.

        >>> from decimal import Decimal
        >>> from datetime import date
        >>>
        >>> fx = InMemoryFxBackend(ptax={'USD': {date(2025, 1, 31): Decimal('5')}, 'EUR': {date(2025, 1, 31): Decimal('6')}})
        >>> fx.convert(Decimal(100), 'USD', 'BRL', date(2025, 1, 31))
        Decimal('500')
        >>> fx.convert(Decimal(60), 'EUR', 'USD', date(2025, 1, 31))
        Decimal('72')
        '''

        if from_currency == to_currency:
            return value

        try:
            ask = _1 if from_currency == 'BRL' else self.get_rate(date, from_currency, 'AUTO')
            bid = _1 if to_currency == 'BRL' else self.get_rate(date, to_currency, 'AUTO')

        except BackendError as exc:
            raise ConversionUnavailable(f'FX backend failed converting {from_currency} into {to_currency} on {date}') from exc

        if ask is None or not bid:
            raise ConversionUnavailable(f'no rate to convert {from_currency} into {to_currency} on {date}')

        return value * ask / bid

class InMemoryFxBackend(FxRateBackend):
    '''
    FX rates kept in memory, per currency and date.

    When a currency has no rate on the requested date, up to "lookback" previous days are searched. BRL is always one.

    >>> from decimal import Decimal
    >>> from datetime import date
    >>>
    >>> fx = InMemoryFxBackend(manual={'USD': {date(2025, 1, 31): Decimal('5.1')}}, ptax={'USD': {date(2025, 1, 31): Decimal('5.2')}})
    >>> fx.get_rate(date(2025, 1, 31), 'USD')
    Decimal('5.1')
    >>> fx.get_rate(date(2025, 1, 31), 'USD', 'PTAX')
    Decimal('5.2')
    >>> fx.get_rate(date(2025, 2, 2), 'USD', 'PTAX')
    Decimal('5.2')
    >>> fx.get_rate(date(2025, 2, 9), 'USD') is None
    True
    '''

    def __init__(self,
                 manual: t.Optional[t.Mapping[str, t.Mapping[datetime.date, decimal.Decimal]]] = None,
                 ptax: t.Optional[t.Mapping[str, t.Mapping[datetime.date, decimal.Decimal]]] = None,
                 lookback: int = 7):
        self._manual = {k.upper(): dict(v) for k, v in (manual or {}).items()}
        self._ptax = {k.upper(): dict(v) for k, v in (ptax or {}).items()}

        self.lookback = lookback

    @typeguard.typechecked
    def get_rate(self, date: datetime.date, currency: str, source: _FX_SOURCE = 'AUTO') -> t.Optional[decimal.Decimal]:
        currency = currency.upper()

        if currency == 'BRL':
            return _1

        manual = self._manual.get(currency, {}) if source != 'PTAX' else {}
        ptax = self._ptax.get(currency, {}) if source != 'MANUAL' else {}

        for i in range(self.lookback + 1):
            dref = date - _DAY * i

            for val in (manual.get(dref), ptax.get(dref)):
                if val is not None:
                    if i:
                        _LOG.debug(f'{currency} rate of {date} taken from {dref}')

                    return val

        return None

class RateCurveBackend:
    def get_annual_rate(self, indexer: str, date: datetime.date) -> t.Optional[decimal.Decimal]:
        '''
        Returns the most recently published annual rate, in percent, of an indexer as of a date; or None.
        '''

        raise NotImplementedError()

    def get_daily_indexes(self, indexer: str, begin: datetime.date, end: datetime.date) -> t.Generator[DailyIndex, None, None]:
        '''
        Returns the daily indexes, in percent per day, of an indexer between the begin and end date.

        The begin and end dates are inclusive. Days without publication have a zero index.
        '''

        raise NotImplementedError()

    @typeguard.typechecked
    def calculate_daily_factor(self, indexer: str, begin: datetime.date, end: datetime.date, percentage: decimal.Decimal = _100) -> types.SimpleNamespace:
        '''
        Compounds the daily indexes of a period, the end date excluded.

        The percentage of the index applies to each day. The CDI indices below were taken from the BACEN website.

        >>> from math import isclose
        >>> from datetime import date
        >>>
        >>> bend = InMemoryCurveBackend()
        >>>
        >>> idx = bend.calculate_daily_factor('CDI', date(2022, 1, 10), date(2022, 12, 1))
        >>> idx.amount
        224
        >>> isclose(decimal.Decimal('1.10949606'), idx.value, rel_tol=1e-8)
        True

        >>> idx = bend.calculate_daily_factor('CDI', date(2024, 1, 2), date(2024, 1, 2))
        >>> idx.amount
        0
        >>> idx.value == 1
        True
        '''

        if begin < end:
            gen = self.get_daily_indexes(indexer, begin, end - _DAY)
            pct = percentage / _100
            idx = next(gen, None)
            fac = _1
            cnt = 0

            for x in _date_range(begin, end):
                if idx and x == idx.date and idx.value > 0:
                    fac = fac * (1 + pct * idx.value / _100)

                    cnt = cnt + 1

                    idx = next(gen, None)

                elif idx and x == idx.date:
                    idx = next(gen, None)

                else:
                    _LOG.warning(f'{indexer} index for date {x} was not found')

            return types.SimpleNamespace(value=fac, amount=cnt)

        elif begin == end:
            return types.SimpleNamespace(value=_1, amount=0)

        else:
            raise InvalidDateRange(f'end date {end} is not greater than begin date {begin}')

class InMemoryCurveBackend(RateCurveBackend):
    '''
    A rate curve kept in memory.

    Daily CDI indexes, from 2017-12-29 to 2025-01-31, are built in. The annual CDI rate as of a date is derived from
    the latest daily index, over 252 days. Other indexers, or other annual rates, can be given as published series.

    >>> from datetime import date
    >>>
    >>> round(InMemoryCurveBackend().get_annual_rate('CDI', date(2023, 1, 2)), 2)
    Decimal('13.65')
    >>> InMemoryCurveBackend().get_annual_rate('CDI', date(2010, 1, 4)) is None
    True
    '''

    _ignore_cdi = [
        datetime.date(2018, 1, 1),   datetime.date(2018, 2, 12),  datetime.date(2018, 2, 13),  datetime.date(2018, 3, 30),   # NOQA
        datetime.date(2018, 5, 1),   datetime.date(2018, 5, 31),  datetime.date(2018, 9, 7),   datetime.date(2018, 10, 12),  # NOQA
        datetime.date(2018, 11, 2),  datetime.date(2018, 11, 15), datetime.date(2018, 12, 25), datetime.date(2019, 1, 1),    # NOQA
        datetime.date(2019, 3, 4),   datetime.date(2019, 3, 5),   datetime.date(2019, 4, 19),  datetime.date(2019, 5, 1),    # NOQA
        datetime.date(2019, 6, 20),  datetime.date(2019, 11, 15), datetime.date(2019, 12, 25), datetime.date(2020, 1, 1),    # NOQA
        datetime.date(2020, 2, 24),  datetime.date(2020, 2, 25),  datetime.date(2020, 4, 10),  datetime.date(2020, 4, 21),   # NOQA
        datetime.date(2020, 5, 1),   datetime.date(2020, 6, 11),  datetime.date(2020, 9, 7),   datetime.date(2020, 10, 12),  # NOQA
        datetime.date(2020, 11, 2),  datetime.date(2020, 12, 25), datetime.date(2021, 1, 1),   datetime.date(2021, 2, 15),   # NOQA
        datetime.date(2021, 2, 16),  datetime.date(2021, 4, 2),   datetime.date(2021, 4, 21),  datetime.date(2021, 6, 3),    # NOQA
        datetime.date(2021, 9, 7),   datetime.date(2021, 10, 12), datetime.date(2021, 11, 2),  datetime.date(2021, 11, 15),  # NOQA
        datetime.date(2022, 2, 28),  datetime.date(2022, 3, 1),   datetime.date(2022, 4, 15),  datetime.date(2022, 4, 21),   # NOQA
        datetime.date(2022, 6, 16),  datetime.date(2022, 9, 7),   datetime.date(2022, 10, 12), datetime.date(2022, 11, 2),   # NOQA
        datetime.date(2022, 11, 15), datetime.date(2023, 2, 20),  datetime.date(2023, 2, 21),  datetime.date(2023, 4, 7),    # NOQA
        datetime.date(2023, 4, 21),  datetime.date(2023, 5, 1),   datetime.date(2023, 6, 8)                                  # NOQA
    ]

    # Daily CDI, in percent, per range of dates. Ranges are contiguous.
    _registry_cdi = [
        (datetime.date(2017, 12, 29), datetime.date(2018, 2, 7),   decimal.Decimal('0.026444')),  # NOQA
        (datetime.date(2018, 2, 8),   datetime.date(2018, 3, 21),  decimal.Decimal('0.025515')),  # NOQA
        (datetime.date(2018, 3, 22),  datetime.date(2018, 9, 28),  decimal.Decimal('0.024583')),  # NOQA
        (datetime.date(2018, 9, 29),  datetime.date(2019, 7, 31),  decimal.Decimal('0.024620')),  # NOQA
        (datetime.date(2019, 8, 1),   datetime.date(2019, 9, 18),  decimal.Decimal('0.022751')),  # NOQA
        (datetime.date(2019, 9, 19),  datetime.date(2019, 10, 30), decimal.Decimal('0.020872')),  # NOQA
        (datetime.date(2019, 10, 31), datetime.date(2019, 12, 11), decimal.Decimal('0.018985')),  # NOQA
        (datetime.date(2019, 12, 12), datetime.date(2020, 2, 5),   decimal.Decimal('0.017089')),  # NOQA
        (datetime.date(2020, 2, 6),   datetime.date(2020, 3, 18),  decimal.Decimal('0.016137')),  # NOQA
        (datetime.date(2020, 3, 19),  datetime.date(2020, 5, 6),   decimal.Decimal('0.014227')),  # NOQA
        (datetime.date(2020, 5, 7),   datetime.date(2020, 6, 17),  decimal.Decimal('0.011345')),  # NOQA
        (datetime.date(2020, 6, 18),  datetime.date(2020, 8, 5),   decimal.Decimal('0.008442')),  # NOQA
        (datetime.date(2020, 8, 6),   datetime.date(2021, 3, 17),  decimal.Decimal('0.007469')),  # NOQA
        (datetime.date(2021, 3, 18),  datetime.date(2021, 5, 5),   decimal.Decimal('0.010379')),  # NOQA
        (datetime.date(2021, 5, 6),   datetime.date(2021, 6, 16),  decimal.Decimal('0.013269')),  # NOQA
        (datetime.date(2021, 6, 17),  datetime.date(2021, 8, 4),   decimal.Decimal('0.016137')),  # NOQA
        (datetime.date(2021, 8, 5),   datetime.date(2021, 9, 22),  decimal.Decimal('0.019930')),  # NOQA
        (datetime.date(2021, 9, 23),  datetime.date(2021, 10, 27), decimal.Decimal('0.023687')),  # NOQA
        (datetime.date(2021, 10, 28), datetime.date(2021, 12, 8),  decimal.Decimal('0.029256')),  # NOQA
        (datetime.date(2021, 12, 9),  datetime.date(2022, 2, 2),   decimal.Decimal('0.034749')),  # NOQA
        (datetime.date(2022, 2, 3),   datetime.date(2022, 3, 16),  decimal.Decimal('0.040168')),  # NOQA
        (datetime.date(2022, 3, 17),  datetime.date(2022, 5, 4),   decimal.Decimal('0.043739')),  # NOQA
        (datetime.date(2022, 5, 5),   datetime.date(2022, 6, 16),  decimal.Decimal('0.047279')),  # NOQA
        (datetime.date(2022, 6, 17),  datetime.date(2022, 8, 3),   decimal.Decimal('0.049037')),  # NOQA
        (datetime.date(2022, 8, 4),   datetime.date(2023, 8, 2),   decimal.Decimal('0.050788')),  # NOQA
        (datetime.date(2023, 8, 3),   datetime.date(2023, 9, 20),  decimal.Decimal('0.049037')),  # NOQA
        (datetime.date(2023, 9, 21),  datetime.date(2023, 11, 2),  decimal.Decimal('0.047279')),  # NOQA
        (datetime.date(2023, 11, 3),  datetime.date(2023, 12, 13), decimal.Decimal('0.045513')),  # NOQA
        (datetime.date(2023, 12, 14), datetime.date(2024, 1, 31),  decimal.Decimal('0.043739')),  # NOQA
        (datetime.date(2024, 2, 1),   datetime.date(2024, 3, 20),  decimal.Decimal('0.041957')),  # NOQA
        (datetime.date(2024, 3, 21),  datetime.date(2024, 5, 8),   decimal.Decimal('0.040168')),  # NOQA
        (datetime.date(2024, 5, 9),   datetime.date(2024, 9, 18),  decimal.Decimal('0.039270')),  # NOQA
        (datetime.date(2024, 9, 19),  datetime.date(2025, 1, 31),  decimal.Decimal('0.040168')),  # NOQA
    ]

    def __init__(self, annual: t.Optional[t.Mapping[str, t.Mapping[datetime.date, decimal.Decimal]]] = None):
        self._annual = {k.upper(): sorted(v.items()) for k, v in (annual or {}).items()}

    @typeguard.typechecked
    def get_annual_rate(self, indexer: str, date: datetime.date) -> t.Optional[decimal.Decimal]:
        if indexer in self._annual:
            val = None

            for dref, rate in self._annual[indexer]:
                if dref <= date:
                    val = rate

            return val

        elif indexer == 'CDI':
            val = None

            for dref, _, daily in self._registry_cdi:
                if dref <= date:
                    val = daily

            return ((_1 + val / _100) ** 252 - _1) * _100 if val is not None else None

        return None

    # Does not project indexes after the last known date. A projecting backend, if desired, should be a subclass.
    @typeguard.typechecked
    def get_daily_indexes(self, indexer: str, begin: datetime.date, end: datetime.date) -> t.Generator[DailyIndex, None, None]:
        if indexer != 'CDI':
            raise BackendError(f'this backend has no {indexer} daily indexes')

        elif begin < self._registry_cdi[0][0]:
            raise BackendError(f'this backend cannot provide CDI indexes prior to {self._registry_cdi[0][0]}')

        elif end > self._registry_cdi[-1][1]:
            raise BackendError(f'this backend cannot provide CDI indexes after {self._registry_cdi[-1][1]}')

        for dref, done, value in self._registry_cdi:
            while dref <= done:
                if begin <= dref <= end and dref.weekday() < 5 and dref not in self._ignore_cdi:
                    yield DailyIndex(date=dref, value=value)

                elif begin <= dref <= end:
                    yield DailyIndex(date=dref, value=_0)

                dref += _DAY

# Default collaborators. No FX rates, and the built in CDI curve.
_FX = InMemoryFxBackend()

_CURVE = InMemoryCurveBackend()

def _lookup_rate(fx: FxRateBackend, date: datetime.date, currency: str, source: str) -> t.Optional[decimal.Decimal]:
    try:
        return fx.get_rate(date, currency, source)

    except BackendError as exc:
        _LOG.warning(f'FX backend failed for {currency} on {date}: {exc}')

        return None

def _lookup_annual_rate(curve: RateCurveBackend, indexer: str, date: datetime.date) -> t.Optional[decimal.Decimal]:
    try:
        return curve.get_annual_rate(indexer, date)

    except BackendError as exc:
        _LOG.warning(f'rate curve backend failed for {indexer} on {date}: {exc}')

        return None
# }}}

# Public API. Contracts and ledger. {{{
@dataclasses.dataclass
class InterestLeg:
    '''
    One leg of the interest rate of a contract.

      • "indexer", FIXED, CDI, PTAX or MANUAL.

      • "indexer_percent", the share of the indexer, in percent. 100 means the full index.

      • "spread_annual", the fixed annual spread, in percent. For FIXED legs it is the whole rate.

      • "base_rate_annual", for MANUAL legs, the annual index rate, in percent. For CDI legs, a fallback when the curve
        has no published rate.

      • "day_count", overrides the contract's day count basis for this leg.

      • "ptax_currency" and "ptax_source", the currency, and the source, of the FX variation of PTAX legs.

      • "role", RATE or ADJUSTMENT.
    '''

    indexer: _INDEXER = 'FIXED'

    indexer_percent: decimal.Decimal = _100

    spread_annual: decimal.Decimal = _0

    base_rate_annual: t.Optional[decimal.Decimal] = None

    day_count: t.Optional[_DAY_COUNT] = None

    ptax_currency: t.Optional[str] = None

    ptax_source: _FX_SOURCE = 'AUTO'

    role: _LEG_ROLE = 'RATE'

@dataclasses.dataclass
class InterestConfig:
    legs: t.List[InterestLeg] = dataclasses.field(default_factory=list)

    day_count: _DAY_COUNT = '30/360'

    compounding: _COMPOUNDING = 'EXPONENTIAL'

    rounding: _ROUNDING = 'HALF_UP'

@dataclasses.dataclass
class ScheduledFlow:
    '''
    Fixed installments of a SCHEDULED payment flow.

    Grace periods come first, and are not part of "installments". During an INTEREST_ONLY grace the interest is paid.
    During a FULL grace nothing is paid and the interest is capitalised.
    '''

    system: _SYSTEM = 'PRICE'

    periodicity: _PERIODICITY = 'MONTHLY'

    installments: int = 1

    # Defaults to one period after the contract start.
    first_payment_date: t.Optional[datetime.date] = None

    grace_periods: int = 0

    grace_type: _GRACE = 'INTEREST_ONLY'

@dataclasses.dataclass
class PaymentFlowConfig:
    type: _FLOW = 'FLEXIBLE'

    scheduled: t.Optional[ScheduledFlow] = None

@dataclasses.dataclass
class BalanceSnapshot:
    '''A picture of a contract's balance on a date, derived from its ledger.'''

    date: datetime.date = datetime.date.min

    balance_origin: decimal.Decimal = _0

    balance_brl: decimal.Decimal = _0

    accrued_interest_origin: decimal.Decimal = _0

    accrued_interest_brl: decimal.Decimal = _0

    status: _STATUS = 'ACTIVE'

    next_payment_date: t.Optional[datetime.date] = None

    next_payment_amount: t.Optional[decimal.Decimal] = None

@dataclasses.dataclass
class LoanContract:
    '''
    A loan contract.

    The principal is expressed in the origin currency, "currency". For foreign currency loans, "contract_fx_rate" is
    the rate fixed at origination. When absent, it is derived from "principal_brl", or resolved once from the FX
    collaborator on "contract_fx_date" (or the start date).

    The balance of a contract is never edited. It results from replaying the ledger. "current_balance" is a cache
    kept by the persistence layer, and is not read by the engine.
    '''

    id: str

    counterparty: str

    currency: str

    principal_origin: decimal.Decimal

    start_date: datetime.date

    maturity_date: datetime.date

    interest: InterestConfig = dataclasses.field(default_factory=InterestConfig)

    direction: _DIRECTION = 'BORROWED'

    status: _STATUS = 'ACTIVE'

    principal_brl: t.Optional[decimal.Decimal] = None

    contract_fx_rate: t.Optional[decimal.Decimal] = None

    contract_fx_date: t.Optional[datetime.date] = None

    payment_flow: PaymentFlowConfig = dataclasses.field(default_factory=PaymentFlowConfig)

    current_balance: t.Optional[BalanceSnapshot] = None

    notes: str = ''

@dataclasses.dataclass(frozen=True)
class LedgerEntry:
    '''
    An entry of the append-only payment ledger.

      • "currency", the currency of "amount". Defaults to the contract's currency.

      • "interest_portion", for MIXED allocations only, the part of "amount" that pays interest.
    '''

    date: datetime.date

    amount: decimal.Decimal = _0

    type: _ENTRY_TYPE = 'PAYMENT'

    currency: t.Optional[str] = None

    allocation: _ALLOCATION = 'AUTO'

    interest_portion: t.Optional[decimal.Decimal] = None

    description: str = ''
# }}}

# Public API. Validation, templates and migration. {{{
@typeguard.typechecked
def validate_contract(contract: LoanContract) -> None:
    '''
    Validates a contract, collecting every problem found into a single ValidationError.
    '''

    err = []
    cfg = contract.interest
    flw = contract.payment_flow

    if not contract.id.strip():
        err.append('"id" is required')

    if not contract.counterparty.strip():
        err.append('"counterparty" is required')

    if not re.fullmatch(r'[A-Z]{3}', contract.currency):
        err.append(f'"currency" must be an ISO 4217 code, got "{contract.currency}"')

    if contract.direction not in t.get_args(_DIRECTION):
        err.append(f'"direction" must be BORROWED or LENT, got "{contract.direction}"')

    if contract.status not in t.get_args(_STATUS):
        err.append(f'invalid "status", "{contract.status}"')

    if contract.principal_origin <= 0:
        err.append('"principal_origin" must be greater than zero')

    if contract.start_date >= contract.maturity_date:
        err.append('"maturity_date" must be after "start_date"')

    if contract.contract_fx_rate is not None and contract.contract_fx_rate <= 0:
        err.append('"contract_fx_rate" must be greater than zero')

    # Interest.
    if cfg.day_count not in _YEAR_BASIS:
        err.append(f'invalid day count basis, "{cfg.day_count}"')

    if cfg.compounding not in t.get_args(_COMPOUNDING):
        err.append(f'invalid compounding, "{cfg.compounding}"')

    if cfg.rounding not in _ROUNDING_MODES:
        err.append(f'invalid rounding, "{cfg.rounding}"')

    if not cfg.legs:
        err.append('at least one interest leg is required')

    elif len(cfg.legs) > 2:
        err.append('at most two interest legs are supported')

    elif not any(x.role == 'RATE' for x in cfg.legs):
        err.append('at least one leg must have the RATE role')

    for i, leg in enumerate(cfg.legs):
        if leg.indexer not in t.get_args(_INDEXER):
            err.append(f'leg #{i}: invalid indexer, "{leg.indexer}"')

        if leg.indexer_percent <= 0:
            err.append(f'leg #{i}: "indexer_percent" must be greater than zero')

        if leg.spread_annual < 0:
            err.append(f'leg #{i}: "spread_annual" must not be negative')

        if leg.base_rate_annual is not None and leg.base_rate_annual < 0:
            err.append(f'leg #{i}: "base_rate_annual" must not be negative')

        if leg.day_count is not None and leg.day_count not in _YEAR_BASIS:
            err.append(f'leg #{i}: invalid day count basis, "{leg.day_count}"')

        if leg.indexer == 'PTAX' and not leg.ptax_currency:
            err.append(f'leg #{i}: "ptax_currency" is required for PTAX legs')

        if leg.ptax_source not in t.get_args(_FX_SOURCE):
            err.append(f'leg #{i}: invalid PTAX source, "{leg.ptax_source}"')

        if leg.role not in t.get_args(_LEG_ROLE):
            err.append(f'leg #{i}: "role" must be RATE or ADJUSTMENT')

    # Payment flow.
    if flw.type not in t.get_args(_FLOW):
        err.append(f'invalid payment flow, "{flw.type}"')

    elif flw.type == 'SCHEDULED' and flw.scheduled is None:
        err.append('SCHEDULED payment flows require a "scheduled" configuration')

    elif flw.type == 'SCHEDULED' and flw.scheduled is not None:
        sch = flw.scheduled

        if sch.system not in t.get_args(_SYSTEM):
            err.append(f'invalid amortization system, "{sch.system}"')

        if sch.periodicity not in _PERIODICITY_MONTHS:
            err.append(f'invalid periodicity, "{sch.periodicity}"')

        if sch.installments < 1:
            err.append('"installments" must be greater than, or equal to, one')

        if sch.grace_periods < 0:
            err.append('"grace_periods" must not be negative')

        if sch.grace_type not in t.get_args(_GRACE):
            err.append(f'invalid grace type, "{sch.grace_type}"')

        if sch.first_payment_date is not None and sch.first_payment_date <= contract.start_date:
            err.append('"first_payment_date" must be after "start_date"')

    if err:
        raise ValidationError(err)

@typeguard.typechecked
def validate_payment(contract: LoanContract, entry: LedgerEntry, status: t.Optional[_STATUS] = None) -> None:
    '''
    Checks whether a payment can be booked. STATUS is the replayed status of the contract on the payment date.
    '''

    err = []

    if (status or contract.status) == 'PAID':
        err.append(f'contract "{contract.id}" is already settled')

    if entry.type != 'PAYMENT':
        err.append('only PAYMENT entries can be booked')

    if entry.amount <= 0:
        err.append('payment amount must be greater than zero')

    if entry.date < contract.start_date:
        err.append(f'payment date {entry.date} precedes the contract start, {contract.start_date}')

    if entry.allocation not in t.get_args(_ALLOCATION):
        err.append(f'invalid allocation, "{entry.allocation}"')

    if entry.allocation == 'MIXED' and entry.interest_portion is None:
        err.append('MIXED allocations require an interest portion')

    if entry.currency is not None and not re.fullmatch(r'[A-Z]{3}', entry.currency):
        err.append(f'"currency" must be an ISO 4217 code, got "{entry.currency}"')

    if err:
        raise ValidationError(err)

# Interest templates for common market setups.
TEMPLATES: t.Dict[str, t.Tuple[InterestLeg, ...]] = {
    # CDI plus a spread, e.g. 100% of CDI + 2.5% a.a.
    'CDI_PLUS': (InterestLeg(indexer='CDI', spread_annual=decimal.Decimal('2.5')),),

    # FX variation plus a spread, e.g. PTAX USD + 3% a.a.
    'PTAX_PLUS': (InterestLeg(indexer='PTAX', spread_annual=decimal.Decimal('3'), ptax_currency='USD'),),

    # Fixed rate, e.g. 8.5% a.a.
    'FIXED': (InterestLeg(indexer='FIXED', spread_annual=decimal.Decimal('8.5')),),

    # CDI, and FX variation as an adjustment leg.
    'CDI_PTAX': (
        InterestLeg(indexer='CDI', spread_annual=decimal.Decimal('1.5')),
        InterestLeg(indexer='PTAX', spread_annual=decimal.Decimal('1'), ptax_currency='USD', role='ADJUSTMENT')
    ),

    'CUSTOM': ()
}

@typeguard.typechecked
def from_template(
    name: str, *,
    ptax_currency: t.Optional[str] = None,
    day_count: _DAY_COUNT = '30/360',
    compounding: _COMPOUNDING = 'EXPONENTIAL',
    rounding: _ROUNDING = 'HALF_UP'
) -> InterestConfig:
    '''
    Builds an interest configuration from a template. The legs are copies, free to be changed.

    >>> cfg = from_template('CDI_PTAX', ptax_currency='EUR')
    >>> [(x.indexer, str(x.spread_annual), x.ptax_currency, x.role) for x in cfg.legs]
    [('CDI', '1.5', None, 'RATE'), ('PTAX', '1', 'EUR', 'ADJUSTMENT')]
    '''

    if name not in TEMPLATES:
        raise ValueError(f'unknown interest template "{name}"')

    legs = []

    for leg in TEMPLATES[name]:
        if leg.indexer == 'PTAX' and ptax_currency:
            legs.append(dataclasses.replace(leg, ptax_currency=ptax_currency))

        else:
            legs.append(dataclasses.replace(leg))

    return InterestConfig(legs=legs, day_count=day_count, compounding=compounding, rounding=rounding)

# Enumeration values used by the spreadsheet plugins, slugyfied.
_LEGACY_VALUES = {
    'captado': 'BORROWED', 'cedido': 'LENT',
    'ativo': 'ACTIVE', 'quitado': 'PAID', 'vencido': 'OVERDUE', 'renegociado': 'RENEGOTIATED',
    'mensal': 'MONTHLY', 'trimestral': 'QUARTERLY', 'semestral': 'SEMIANNUAL', 'anual': 'ANNUAL', 'diario': 'DAILY',
    'exponencial': 'EXPONENTIAL', 'exp': 'EXPONENTIAL', 'lin': 'LINEAR',
    'pagamento': 'PAYMENT', 'criacao': 'CREATION',
    'juros': 'INTEREST_ONLY', 'principal': 'PRINCIPAL_ONLY', 'misto': 'MIXED',
    'total': 'FULL', 'fixo': 'FIXED', 'pre': 'FIXED', 'taxa': 'RATE', 'ajuste': 'ADJUSTMENT',
    'programado': 'SCHEDULED', 'flexivel': 'FLEXIBLE',
}

# Field name aliases of legacy records. Lookups are done over slugyfied keys.
_CONTRACT_KEYS = {
    'id': ('id', 'contractid', 'contrato', 'codigo'),
    'counterparty': ('counterparty', 'contraparte'),
    'direction': ('direction', 'contracttype', 'tipocontrato', 'tipo'),
    'status': ('status', 'situacao'),
    'currency': ('currency', 'moeda', 'moedaorigem'),
    'principal_origin': ('principalorigin', 'principalorigem', 'principal'),
    'principal_brl': ('principalbrl',),
    'contract_fx_rate': ('contractfxrate', 'ptaxcontrato', 'taxacontrato'),
    'contract_fx_date': ('contractfxdate', 'dataptaxcontrato'),
    'start_date': ('startdate', 'datainicio', 'inicio', 'datain'),
    'maturity_date': ('maturitydate', 'datavencimento', 'vencimento'),
    'notes': ('notes', 'observacoes', 'obs'),
}

_INTEREST_KEYS = {
    'day_count': ('daycountbasis', 'daycount', 'base'),
    'compounding': ('compounding', 'capitalizacao'),
    'rounding': ('rounding', 'arredondamento'),
}

_LEG_KEYS = {
    'indexer': ('indexer', 'indexador'),
    'indexer_percent': ('indexerpercent', 'percent', 'percentual'),
    'spread_annual': ('spreadannual', 'spreadaa', 'spread'),
    'base_rate_annual': ('baserateannual', 'taxabase'),
    'day_count': ('daycountbasis', 'daycount', 'base'),
    'ptax_currency': ('ptaxcurrency', 'moedaptax'),
    'ptax_source': ('ptaxsource', 'fonteptax'),
    'role': ('role', 'papel'),
}

_SCHEDULED_KEYS = {
    'system': ('system', 'sistema'),
    'periodicity': ('periodicity', 'periodicidade'),
    'installments': ('installments', 'parcelas'),
    'first_payment_date': ('firstpaymentdate', 'dataprimeiraparcela'),
    'grace_periods': ('graceperiods', 'carencia'),
    'grace_type': ('gracetype', 'tipocarencia'),
}

_ENTRY_KEYS = {
    'date': ('date', 'data'),
    'type': ('type', 'tipo'),
    'amount': ('amount', 'valor'),
    'currency': ('currency', 'moeda'),
    'allocation': ('allocation', 'alocacao'),
    'interest_portion': ('interestportion', 'parcelajuros', 'juros'),
    'description': ('description', 'descricao', 'historico'),
}

def _pick(record: t.Mapping[str, t.Any], aliases: t.Iterable[str]) -> t.Any:
    for x in aliases:
        if record.get(x) not in (None, ''):
            return record[x]

    return None

def _enum(value: t.Any, literal: t.Any, field: str) -> str:
    txt = str(value).strip()
    val = _LEGACY_VALUES.get(_slugy(txt), txt.upper().replace(' ', '_'))

    if val not in t.get_args(literal):
        raise ValidationError([f'invalid value "{value}" for "{field}"'])

    return val

def _fields(record: t.Mapping[str, t.Any], keys: t.Mapping[str, t.Iterable[str]]) -> t.Dict[str, t.Any]:
    return {k: v for k, v in ((k, _pick(record, aliases)) for k, aliases in keys.items()) if v is not None}

def _slugy_keys(record: t.Mapping[str, t.Any]) -> t.Dict[str, t.Any]:
    return {_slugy(k): v for k, v in record.items()}

@typeguard.typechecked
def leg_from_record(record: t.Mapping[str, t.Any]) -> InterestLeg:
    kwa = _fields(_slugy_keys(record), _LEG_KEYS)

    for k in ('indexer_percent', 'spread_annual', 'base_rate_annual'):
        if k in kwa:
            kwa[k] = _to_decimal(kwa[k])

    for k, lit in (('indexer', _INDEXER), ('ptax_source', _FX_SOURCE), ('role', _LEG_ROLE)):
        if k in kwa:
            kwa[k] = _enum(kwa[k], lit, k)

    if 'day_count' in kwa:
        kwa['day_count'] = _enum(kwa['day_count'], _DAY_COUNT, 'day_count')

    if 'ptax_currency' in kwa:
        kwa['ptax_currency'] = str(kwa['ptax_currency']).upper()

    return InterestLeg(**kwa)

@typeguard.typechecked
def contract_from_record(record: t.Mapping[str, t.Any]) -> LoanContract:
    '''
    Reads a contract record, current or legacy, into a validated contract.

    Legacy records are keyed by lower cased spreadsheet headers and carry Portuguese enumeration values. Both are
    accepted here, and nowhere else.

    >>> rec = {'id': 'EMP-001', 'contraparte': 'Banco X', 'tipo': 'CAPTADO', 'moeda': 'usd', 'principalorigem': '100.000,00',
    ...        'ptaxcontrato': '5,00', 'datainicio': '01/01/2025', 'datavencimento': '2026-01-01',
    ...        'legs': [{'indexador': 'FIXED', 'spreadaa': 12}]}
    >>> c = contract_from_record(rec)
    >>> (c.direction, c.currency, c.principal_origin, c.contract_fx_rate, c.start_date)
    ('BORROWED', 'USD', Decimal('100000.00'), Decimal('5.00'), datetime.date(2025, 1, 1))
    '''

    rec = _slugy_keys(record)
    kwa = _fields(rec, _CONTRACT_KEYS)

    kwa['id'] = str(kwa.get('id', ''))
    kwa['counterparty'] = str(kwa.get('counterparty', ''))
    kwa['currency'] = str(kwa.get('currency', 'BRL')).upper()

    for k in ('direction', 'status'):
        if k in kwa:
            kwa[k] = _enum(kwa[k], _DIRECTION if k == 'direction' else _STATUS, k)

    for k in ('principal_origin', 'principal_brl', 'contract_fx_rate'):
        if k in kwa:
            kwa[k] = _to_decimal(kwa[k])

    for k in ('start_date', 'maturity_date', 'contract_fx_date'):
        if k in kwa:
            kwa[k] = _to_date(kwa[k])

    missing = [k for k in ('principal_origin', 'start_date', 'maturity_date') if k not in kwa]

    if missing:
        raise ValidationError([f'"{k}" is required' for k in missing])

    # Interest, either nested or flat.
    cfg = _slugy_keys(rec['interestconfig']) if isinstance(rec.get('interestconfig'), t.Mapping) else rec
    ikw = _fields(cfg, _INTEREST_KEYS)

    for k, lit in (('day_count', _DAY_COUNT), ('compounding', _COMPOUNDING), ('rounding', _ROUNDING)):
        if k in ikw:
            ikw[k] = _enum(ikw[k], lit, k)

    kwa['interest'] = InterestConfig(legs=[leg_from_record(x) for x in cfg.get('legs') or []], **ikw)

    # Payment flow.
    if isinstance(rec.get('paymentflow'), t.Mapping):
        flw = _slugy_keys(rec['paymentflow'])
        sch = None

        if isinstance(flw.get('scheduled'), t.Mapping):
            skw = _fields(_slugy_keys(flw['scheduled']), _SCHEDULED_KEYS)

            for k, lit in (('system', _SYSTEM), ('periodicity', _PERIODICITY), ('grace_type', _GRACE)):
                if k in skw:
                    skw[k] = _enum(skw[k], lit, k)

            for k in ('installments', 'grace_periods'):
                if k in skw:
                    skw[k] = int(skw[k])

            if 'first_payment_date' in skw:
                skw['first_payment_date'] = _to_date(skw['first_payment_date'])

            sch = ScheduledFlow(**skw)

        kwa['payment_flow'] = PaymentFlowConfig(type=_enum(_pick(flw, ('type', 'tipo')) or 'FLEXIBLE', _FLOW, 'type'), scheduled=sch)

    contract = LoanContract(**kwa)

    validate_contract(contract)

    return contract

@typeguard.typechecked
def entry_from_record(record: t.Mapping[str, t.Any]) -> LedgerEntry:
    '''
    Reads a ledger record, current or legacy, into a ledger entry.

    >>> entry_from_record({'Data': '15/02/2025', 'Tipo': 'Pagamento', 'Valor': '50.000,00', 'Alocação': 'Juros'})
    LedgerEntry(date=datetime.date(2025, 2, 15), amount=Decimal('50000.00'), type='PAYMENT', currency=None, allocation='INTEREST_ONLY', interest_portion=None, description='')
    '''

    kwa = _fields(_slugy_keys(record), _ENTRY_KEYS)

    if 'date' not in kwa or 'amount' not in kwa:
        raise ValidationError(['ledger records require a date and an amount'])

    kwa['date'] = _to_date(kwa['date'])
    kwa['amount'] = _to_decimal(kwa['amount'])

    if 'type' in kwa:
        kwa['type'] = _enum(kwa['type'], _ENTRY_TYPE, 'type')

    if 'allocation' in kwa:
        kwa['allocation'] = _enum(kwa['allocation'], _ALLOCATION, 'allocation')

    if 'interest_portion' in kwa:
        kwa['interest_portion'] = _to_decimal(kwa['interest_portion'])

    if 'currency' in kwa:
        kwa['currency'] = str(kwa['currency']).upper()

    if 'description' in kwa:
        kwa['description'] = str(kwa['description'])

    return LedgerEntry(**kwa)
# }}}

# Public API. Rate resolution. {{{
def _fixed_fx_rate(contract: LoanContract) -> t.Optional[decimal.Decimal]:
    if contract.currency == 'BRL':
        return _1

    elif contract.contract_fx_rate:
        return contract.contract_fx_rate

    elif contract.principal_brl and contract.principal_origin:
        return contract.principal_brl / contract.principal_origin

    return None

def _cdi_term(leg: InterestLeg, start: datetime.date, end: datetime.date, curve: RateCurveBackend, rate_mode: str, strict: bool, days: int, basis: str, compounding: str) -> decimal.Decimal:
    if rate_mode == 'DAILY' and start < end:
        try:
            return curve.calculate_daily_factor('CDI', start, end, leg.indexer_percent).value - _1

        except BackendError as exc:
            _LOG.warning(f'daily CDI unavailable between {start} and {end}, using the annual rate ({exc})')

    annual = _lookup_annual_rate(curve, 'CDI', start)

    if annual is None and leg.base_rate_annual is not None:
        _LOG.warning(f'no CDI rate published as of {start}, using the leg base rate of {leg.base_rate_annual}%')

        annual = leg.base_rate_annual

    if annual is None and strict:
        raise MissingRateData(f'no CDI rate published as of {start}')

    elif annual is None:
        _LOG.warning(f'no CDI rate published as of {start}, the CDI leg contributes zero')

        return _0

    return annual_to_effective(annual, compounding, basis, days, percent=True) * leg.indexer_percent / _100

def _ptax_term(contract: LoanContract, leg: InterestLeg, start: datetime.date, end: datetime.date, fx: FxRateBackend, strict: bool) -> decimal.Decimal:
    if end <= start:
        return _0

    cur = leg.ptax_currency or contract.currency
    fbk = _fixed_fx_rate(contract) if cur == contract.currency else None
    rt0 = _lookup_rate(fx, start, cur, leg.ptax_source)
    rt1 = _lookup_rate(fx, end, cur, leg.ptax_source)

    if rt0 is None or rt1 is None:
        day = start if rt0 is None else end

        if fbk is None and strict:
            raise MissingRateData(f'PTAX {cur} unavailable on {day}')

        elif fbk is None:
            _LOG.warning(f'PTAX {cur} unavailable on {day}, the PTAX leg contributes zero')

            return _0

        _LOG.warning(f'PTAX {cur} unavailable on {day}, using the contract rate of {fbk}')

        rt0 = fbk if rt0 is None else rt0
        rt1 = fbk if rt1 is None else rt1

    return rt1 / rt0 - _1

@typeguard.typechecked
def resolve_leg(
    contract: LoanContract,
    leg: InterestLeg,
    start: datetime.date,
    end: datetime.date, *,
    fx: FxRateBackend = _FX,
    curve: RateCurveBackend = _CURVE,
    rate_mode: _RATE_MODE = 'BASE',
    strict: bool = False
) -> decimal.Decimal:
    '''
    Resolves one interest leg into its effective rate over a period.

    The leg rate is "(1 + index × percent) × (1 + spread) − 1", where both terms are effective over the period.

      • FIXED, the index term is zero. The spread is the whole rate.

      • MANUAL, the index term is the leg's annual base rate. Without a base rate, the spread takes the index place
        (and the spread term becomes zero).

      • CDI, the index term is the curve's latest annual rate as of the period start. With "rate_mode" DAILY, the daily
        indexes of the period are compounded instead, the percentage applied to each day. If the curve has no rate,
        the leg's base rate is used. If there is none, the term is zero and a warning is logged; unless "strict" is
        true, in which case MissingRateData is raised.

      • PTAX, the index term is the FX variation over the period, "end / start − 1". A missing endpoint falls back to
        the contract rate, when the leg currency is the contract's.
    '''

    basis = leg.day_count or contract.interest.day_count
    comp = contract.interest.compounding
    days = day_count_fraction(start, end, basis).days
    sprd = annual_to_effective(leg.spread_annual, comp, basis, days, percent=True)
    pct = leg.indexer_percent / _100

    if leg.indexer == 'FIXED':
        idx = _0

    elif leg.indexer == 'MANUAL' and leg.base_rate_annual is not None:
        idx = annual_to_effective(leg.base_rate_annual, comp, basis, days, percent=True) * pct

    elif leg.indexer == 'MANUAL':
        idx, sprd = sprd * pct, _0

    elif leg.indexer == 'CDI':
        idx = _cdi_term(leg, start, end, curve, rate_mode, strict, days, basis, comp)

    else:
        idx = _ptax_term(contract, leg, start, end, fx, strict) * pct

    return (_1 + idx) * (_1 + sprd) - _1

@typeguard.typechecked
def resolve_rate(
    contract: LoanContract,
    start: datetime.date,
    end: datetime.date, *,
    fx: FxRateBackend = _FX,
    curve: RateCurveBackend = _CURVE,
    rate_mode: _RATE_MODE = 'BASE',
    strict: bool = False
) -> decimal.Decimal:
    '''
    Effective rate of a contract over a period. Legs combine multiplicatively.
    '''

    legs = [resolve_leg(contract, x, start, end, fx=fx, curve=curve, rate_mode=rate_mode, strict=strict) for x in contract.interest.legs]

    return combine_rates(legs)
# }}}

# Public API. Dual FX conversion. {{{
@dataclasses.dataclass(frozen=True)
class FxQuote:
    '''
    A conversion rate into BRL.

      • "source" is BRL for BRL contracts, PTAX for market rates and CONTRACT when the contract rate was used instead.

      • "degraded" is true when a market rate was wanted but unavailable.
    '''

    rate: decimal.Decimal = _1

    source: str = 'BRL'

    degraded: bool = False

    date: datetime.date = datetime.date.min

@typeguard.typechecked
def contract_fx_rate(contract: LoanContract, *, fx: FxRateBackend = _FX) -> decimal.Decimal:
    '''
    The rate of the contract track. Fixed at origination; or, when the contract lacks it, resolved once from the FX
    collaborator on the contract FX date, or its start date.
    '''

    if (rate := _fixed_fx_rate(contract)) is not None:
        return rate

    date = contract.contract_fx_date or contract.start_date

    if (rate := _lookup_rate(fx, date, contract.currency, 'AUTO')) is not None:
        _LOG.debug(f'contract rate of "{contract.id}" resolved on {date}, {rate}')

        return rate

    raise ConversionUnavailable(f'no contract rate for "{contract.id}", {contract.currency} on {date}')

@typeguard.typechecked
def mark_to_market_rate(
    contract: LoanContract,
    date: datetime.date, *,
    fx: FxRateBackend = _FX,
    fx_mode: _FX_MODE = 'DAILY',
    fallback: t.Optional[decimal.Decimal] = None
) -> FxQuote:
    '''
    The rate of the PTAX track on a date. With "fx_mode" MONTHLY or ANNUAL, the rate of the end of the month, or of
    the year, is used.

    If the market rate is unavailable the contract rate (or FALLBACK) is used, and the quote is flagged as degraded.
    This never aborts. Only a foreign contract without any contract rate raises ConversionUnavailable.
    '''

    if contract.currency == 'BRL':
        return FxQuote(rate=_1, source='BRL', degraded=False, date=date)

    if fx_mode == 'MONTHLY':
        date = date + dateutil.relativedelta.relativedelta(day=31)

    elif fx_mode == 'ANNUAL':
        date = date.replace(month=12, day=31)

    if (rate := _lookup_rate(fx, date, contract.currency, 'AUTO')) is not None:
        return FxQuote(rate=rate, source='PTAX', degraded=False, date=date)

    rate = fallback if fallback is not None else contract_fx_rate(contract, fx=fx)

    _LOG.warning(f'PTAX {contract.currency} unavailable on {date}, using the contract rate of {rate}')

    return FxQuote(rate=rate, source='CONTRACT', degraded=True, date=date)
# }}}

# Public API. Ledger reconciliation. {{{
@dataclasses.dataclass
class Allocation:
    interest: decimal.Decimal = _0

    principal: decimal.Decimal = _0

    # Amount left over after interest and principal were covered.
    excess: decimal.Decimal = _0

@dataclasses.dataclass
class LedgerPosition:
    '''
    The state of a contract right after a ledger entry.

      • "amount" and "currency", as entered. "amount_origin" and "amount_brl", the same amount in the contract's
        currency and in BRL. "fx_rate" is the rate used to reach the origin currency.

      • "accrued", the interest accrued since the previous entry.

      • "interest_covered", "principal_covered" and "excess", the allocation of the amount.

      • "pending_interest", "principal" and "balance", the outstanding values after the entry.
    '''

    no: int = 0

    date: datetime.date = datetime.date.min

    type: _ENTRY_TYPE = 'PAYMENT'

    amount: decimal.Decimal = _0

    currency: str = 'BRL'

    amount_origin: decimal.Decimal = _0

    amount_brl: decimal.Decimal = _0

    fx_rate: decimal.Decimal = _1

    accrued: decimal.Decimal = _0

    interest_covered: decimal.Decimal = _0

    principal_covered: decimal.Decimal = _0

    excess: decimal.Decimal = _0

    pending_interest: decimal.Decimal = _0

    principal: decimal.Decimal = _0

    balance: decimal.Decimal = _0

    status: _STATUS = 'ACTIVE'

@dataclasses.dataclass
class Position:
    date: datetime.date = datetime.date.min

    principal: decimal.Decimal = _0

    pending_interest: decimal.Decimal = _0

    balance: decimal.Decimal = _0

    status: _STATUS = 'ACTIVE'

@typeguard.typechecked
def allocate(
    amount: decimal.Decimal,
    pending_interest: decimal.Decimal,
    principal: decimal.Decimal,
    allocation: _ALLOCATION = 'AUTO',
    interest_portion: t.Optional[decimal.Decimal] = None
) -> Allocation:
    '''
    Splits a payment between pending interest and principal.

      • AUTO, interest first, the remainder to principal.

      • INTEREST_ONLY and PRINCIPAL_ONLY, all to the named bucket.

      • MIXED, the caller tells the interest portion. The remainder goes to principal.

    Neither bucket is covered beyond what is outstanding. The rest is reported as excess.

    >>> from decimal import Decimal
    >>>
    >>> allocate(Decimal(50000), Decimal(30000), Decimal(1000000))
    Allocation(interest=Decimal('30000'), principal=Decimal('20000'), excess=Decimal('0'))
    >>> allocate(Decimal(20000), Decimal(30000), Decimal(1000000))
    Allocation(interest=Decimal('20000'), principal=Decimal('0'), excess=Decimal('0'))
    '''

    if amount < 0:
        raise AllocationError(f'payment amount must not be negative, got {amount}')

    pending = max(pending_interest, _0)
    principal = max(principal, _0)

    if allocation == 'AUTO':
        gain = min(pending, amount)
        amrt = min(amount - gain, principal)

    elif allocation == 'INTEREST_ONLY':
        gain = min(pending, amount)
        amrt = _0

    elif allocation == 'PRINCIPAL_ONLY':
        gain = _0
        amrt = min(amount, principal)

    elif interest_portion is None:
        raise AllocationError('MIXED allocations require an interest portion')

    elif interest_portion < 0 or interest_portion > amount:
        raise AllocationError(f'interest portion must be between zero and the payment amount, {amount}, got {interest_portion}')

    else:
        gain = interest_portion

        if gain > pending:
            _LOG.warning(f'interest portion of {gain} exceeds the pending interest of {pending}, clamping it')

            gain = pending

        amrt = min(amount - gain, principal)

    return Allocation(interest=gain, principal=amrt, excess=amount - gain - amrt)

def _status(contract: LoanContract, balance: decimal.Decimal, date: datetime.date) -> str:
    if balance <= _EPSILON:
        return 'PAID'

    elif contract.status == 'RENEGOTIATED':
        return 'RENEGOTIATED'

    elif date > contract.maturity_date:
        return 'OVERDUE'

    return 'ACTIVE'

def _sorted_ledger(contract: LoanContract, ledger: t.Iterable[LedgerEntry]) -> t.List[LedgerEntry]:
    for x in ledger:
        if x.date < contract.start_date:
            raise InvalidDateRange(f'ledger entry of {x.date} precedes the contract start, {contract.start_date}')

        if x.amount < 0:
            raise AllocationError(f'ledger entry of {x.date} has a negative amount, {x.amount}')

    # Stable. Entries of the same day keep their booking order.
    return sorted(ledger, key=lambda x: x.date)

class _Replay:
    '''
    Left fold over the ledger of a contract.

    Registers:

      • "date", the date up to which interest was accrued.

      • "principal", the outstanding principal.

      • "pending", the interest accrued and not yet paid. Under EXPONENTIAL compounding interest accrues over principal
        plus pending interest. Under LINEAR it accrues over the principal only, so pending interest is never
        capitalised.

      • "accrued", the total interest accrued since the contract start.
    '''

    def __init__(self, contract: LoanContract, *, fx: FxRateBackend, curve: RateCurveBackend, rate_mode: str, strict: bool):
        self.contract = contract
        self.fx = fx
        self.curve = curve
        self.rate_mode = rate_mode
        self.strict = strict

        self.regs = types.SimpleNamespace(date=contract.start_date, principal=contract.principal_origin, pending=_0, accrued=_0)

        if 'BUS/252' in [contract.interest.day_count] + [x.day_count for x in contract.interest.legs]:
            _LOG.warning(f'contract "{contract.id}" uses BUS/252, days are counted as calendar days')

    @property
    def balance(self) -> decimal.Decimal:
        return self.regs.principal + self.regs.pending

    def rate(self, start: datetime.date, end: datetime.date) -> decimal.Decimal:
        return resolve_rate(self.contract, start, end, fx=self.fx, curve=self.curve, rate_mode=self.rate_mode, strict=self.strict)

    def accrue(self, date: datetime.date) -> decimal.Decimal:
        if date <= self.regs.date:
            return _0

        base = self.regs.principal if self.contract.interest.compounding == 'LINEAR' else self.balance
        gain = base * self.rate(self.regs.date, date)

        self.regs.pending += gain
        self.regs.accrued += gain
        self.regs.date = date

        return gain

    # Payments are converted into BRL, then into the origin currency through the PTAX track.
    def convert(self, entry: LedgerEntry) -> types.SimpleNamespace:
        contract = self.contract
        cur = entry.currency or contract.currency

        if cur == contract.currency:
            quote = mark_to_market_rate(contract, entry.date, fx=self.fx)

            return types.SimpleNamespace(origin=entry.amount, brl=entry.amount * quote.rate, rate=_1)

        brl = entry.amount if cur == 'BRL' else self.fx.convert(entry.amount, cur, 'BRL', entry.date)
        quote = mark_to_market_rate(contract, entry.date, fx=self.fx)
        org = brl / quote.rate

        return types.SimpleNamespace(origin=org, brl=brl, rate=org / entry.amount if entry.amount else _1)

    def apply(self, entry: LedgerEntry) -> types.SimpleNamespace:
        gain = self.accrue(entry.date)
        amt = self.convert(entry)

        if entry.type == 'CREATION':
            alc = Allocation()

        else:
            prt = entry.interest_portion * amt.rate if entry.interest_portion is not None else None
            alc = allocate(amt.origin, self.regs.pending, self.regs.principal, entry.allocation, prt)

        self.regs.pending -= alc.interest
        self.regs.principal -= alc.principal

        if alc.excess:
            _LOG.warning(f'payment of {entry.date} to "{self.contract.id}" exceeds what is due by {alc.excess} {self.contract.currency}')

        _LOG.debug(f'{entry.date}: accrued {gain}, interest {alc.interest}, principal {alc.principal}, balance {self.balance}')

        return types.SimpleNamespace(accrued=gain, amount=amt, allocation=alc)

@typeguard.typechecked
def reconcile(
    contract: LoanContract,
    ledger: t.Sequence[LedgerEntry], *,
    fx: FxRateBackend = _FX,
    curve: RateCurveBackend = _CURVE,
    until: t.Optional[datetime.date] = None,
    rate_mode: _RATE_MODE = 'BASE',
    strict: bool = False,
    abort: t.Optional[threading.Event] = None
) -> t.List[LedgerPosition]:
    '''
    Replays the ledger of a contract, in date order, from its principal at the start date.

    For each entry, interest is accrued since the previous entry, and the amount is allocated according to the entry's
    policy. Returns one position per entry, up to "until" if given. Values are rounded on output, the fold is not.

    A position is PAID when its balance is at most one cent. Otherwise it keeps RENEGOTIATED, or becomes OVERDUE after
    the maturity date, or is ACTIVE.
    '''

    rep = _Replay(contract, fx=fx, curve=curve, rate_mode=rate_mode, strict=strict)
    q = _quantizer(contract.interest.rounding)
    out = []

    for no, entry in enumerate(_sorted_ledger(contract, ledger), 1):
        if until is not None and entry.date > until:
            break

        _check_abort(abort)

        res = rep.apply(entry)
        pos = LedgerPosition()

        pos.no = no
        pos.date = entry.date
        pos.type = entry.type
        pos.amount = entry.amount
        pos.currency = entry.currency or contract.currency
        pos.amount_origin = q(res.amount.origin)
        pos.amount_brl = q(res.amount.brl)
        pos.fx_rate = res.amount.rate
        pos.accrued = q(res.accrued)
        pos.interest_covered = q(res.allocation.interest)
        pos.principal_covered = q(res.allocation.principal)
        pos.excess = q(res.allocation.excess)
        pos.pending_interest = q(rep.regs.pending)
        pos.principal = q(rep.regs.principal)
        pos.balance = q(rep.balance)
        pos.status = _status(contract, pos.balance, entry.date)

        out.append(pos)

    return out

@typeguard.typechecked
def balance_at(
    contract: LoanContract,
    ledger: t.Sequence[LedgerEntry],
    date: datetime.date, *,
    fx: FxRateBackend = _FX,
    curve: RateCurveBackend = _CURVE,
    rate_mode: _RATE_MODE = 'BASE',
    strict: bool = False
) -> Position:
    '''
    Balance of a contract on a date: the ledger replayed through the date, plus the interest accrued since the last
    entry.
    '''

    if date < contract.start_date:
        raise InvalidDateRange(f'date {date} precedes the contract start, {contract.start_date}')

    rep = _Replay(contract, fx=fx, curve=curve, rate_mode=rate_mode, strict=strict)
    q = _quantizer(contract.interest.rounding)

    for entry in _sorted_ledger(contract, ledger):
        if entry.date > date:
            break

        rep.apply(entry)

    rep.accrue(date)

    return Position(date=date, principal=q(rep.regs.principal), pending_interest=q(rep.regs.pending), balance=q(rep.balance), status=_status(contract, q(rep.balance), date))

@typeguard.typechecked
def contract_status(contract: LoanContract, ledger: t.Sequence[LedgerEntry], as_of: datetime.date, *, fx: FxRateBackend = _FX, curve: RateCurveBackend = _CURVE) -> _STATUS:
    return balance_at(contract, ledger, as_of, fx=fx, curve=curve).status

@typeguard.typechecked
def snapshot(contract: LoanContract, ledger: t.Sequence[LedgerEntry], as_of: datetime.date, *, fx: FxRateBackend = _FX, curve: RateCurveBackend = _CURVE) -> BalanceSnapshot:
    '''
    Balance snapshot of a contract on a date, in origin currency and in BRL (PTAX track). For contracts with a fixed
    schedule, the next installment after the date is included.
    '''

    pos = balance_at(contract, ledger, as_of, fx=fx, curve=curve)
    quote = mark_to_market_rate(contract, as_of, fx=fx)
    q = _quantizer(contract.interest.rounding)
    out = BalanceSnapshot()

    out.date = as_of
    out.balance_origin = pos.balance
    out.balance_brl = q(pos.balance * quote.rate)
    out.accrued_interest_origin = pos.pending_interest
    out.accrued_interest_brl = q(pos.pending_interest * quote.rate)
    out.status = pos.status

    if contract.payment_flow.type in ('SCHEDULED', 'BULLET'):
        nxt = next((x for x in build_schedule(contract, fx=fx, curve=curve) if x.date > as_of), None)

        if nxt:
            out.next_payment_date = nxt.date
            out.next_payment_amount = nxt.payment

    return out
# }}}

# Public API. Accrual schedule. {{{
@dataclasses.dataclass
class AccrualRow:
    '''
    A period of an accrual schedule.

    Values come in three views: the origin currency, BRL at the contract rate ("_brl_contract"), and BRL at the PTAX
    of the period ("_brl_ptax").

      • "rate", the effective rate of the whole period.

      • "fx_variation", the difference between both BRL views of the opening balance. "fx_variation_pct", the PTAX
        over the contract rate, in percent.

      • "fx_source", PTAX, or CONTRACT when the PTAX was unavailable ("degraded" is then true). BRL for BRL contracts.

      • "paid", whether the ledger has a payment in the period. "interest_paid" and "principal_paid" are the amounts
        allocated by those payments, and "pending_interest" the interest still unpaid at the period end.

      • "cumulative_interest", the interest accrued since the schedule start, in the three views.
    '''

    no: int = 0

    start: datetime.date = datetime.date.min

    end: datetime.date = datetime.date.min

    days: int = 0

    rate: decimal.Decimal = _0

    opening: decimal.Decimal = _0

    interest: decimal.Decimal = _0

    closing: decimal.Decimal = _0

    opening_brl_contract: decimal.Decimal = _0

    interest_brl_contract: decimal.Decimal = _0

    closing_brl_contract: decimal.Decimal = _0

    opening_brl_ptax: decimal.Decimal = _0

    interest_brl_ptax: decimal.Decimal = _0

    closing_brl_ptax: decimal.Decimal = _0

    contract_rate: decimal.Decimal = _1

    ptax_rate: decimal.Decimal = _1

    fx_source: str = 'BRL'

    degraded: bool = False

    fx_variation: decimal.Decimal = _0

    fx_variation_pct: decimal.Decimal = _0

    cumulative_interest: decimal.Decimal = _0

    cumulative_interest_brl_contract: decimal.Decimal = _0

    cumulative_interest_brl_ptax: decimal.Decimal = _0

    paid: bool = False

    interest_paid: decimal.Decimal = _0

    principal_paid: decimal.Decimal = _0

    pending_interest: decimal.Decimal = _0

@typeguard.typechecked
def build_accrual(
    contract: LoanContract,
    ledger: t.Sequence[LedgerEntry],
    start: datetime.date,
    end: datetime.date,
    frequency: _FREQUENCY = 'MONTHLY', *,
    fx: FxRateBackend = _FX,
    curve: RateCurveBackend = _CURVE,
    rate_mode: _RATE_MODE = 'BASE',
    fx_mode: _FX_MODE = 'DAILY',
    strict: bool = False,
    abort: t.Optional[threading.Event] = None
) -> t.List[AccrualRow]:
    '''
    Generates the accrual schedule of a contract between two dates.

    The opening balance is not read from the contract. The ledger is replayed through every entry dated up to START,
    and interest is accrued up to it. This is what allows regenerating a schedule after a backdated payment.

    Periods are anchored on START (START + 1 month, START + 2 months, and so on), the last one truncated at END. In
    each period, "closing = opening + interest". Interest is "opening × rate" under EXPONENTIAL compounding, and
    "principal × rate" under LINEAR, where pending interest is not capitalised. Payments dated inside a period split
    its accrual: interest is accrued up to the payment, the payment is allocated, and accrual resumes over the new
    balance.

    Every period is projected into BRL under the contract rate and the PTAX of its end (see "mark_to_market_rate").

    The output is a list, built all at once. If ABORT is set while building, BuildCancelled is raised and nothing is
    returned. An END that is not after START yields an empty list.
    '''

    if end <= start:
        return []

    elif start < contract.start_date:
        raise InvalidDateRange(f'accrual start {start} precedes the contract start, {contract.start_date}')

    rep = _Replay(contract, fx=fx, curve=curve, rate_mode=rate_mode, strict=strict)
    q = _quantizer(contract.interest.rounding)
    entries = _sorted_ledger(contract, ledger)
    step = _FREQUENCY_STEP[frequency]
    crt = contract_fx_rate(contract, fx=fx)
    cum = types.SimpleNamespace(origin=_0, contract=_0, ptax=_0)
    out = []

    # 1. Opening balance.
    while entries and entries[0].date <= start:
        rep.apply(entries.pop(0))

    rep.accrue(start)

    # 2. Periods.
    d0, no = start, 1

    while d0 < end:
        _check_abort(abort)

        d1 = min(start + step * no, end)
        opening = rep.balance
        rate = rep.rate(d0, d1)
        gain = ipd = ppd = _0
        paid = False

        while entries and entries[0].date <= d1:
            res = rep.apply(entries.pop(0))

            gain += res.accrued
            ipd += res.allocation.interest
            ppd += res.allocation.principal
            paid = True

        gain += rep.accrue(d1)
        closing = rep.balance
        quote = mark_to_market_rate(contract, d1, fx=fx, fx_mode=fx_mode, fallback=crt)

        cum.origin += gain
        cum.contract += gain * crt
        cum.ptax += gain * quote.rate

        row = AccrualRow()

        row.no = no
        row.start = d0
        row.end = d1
        row.days = day_count_fraction(d0, d1, contract.interest.day_count).days
        row.rate = rate
        row.opening = q(opening)
        row.interest = q(gain)
        row.closing = q(closing)
        row.opening_brl_contract = q(opening * crt)
        row.interest_brl_contract = q(gain * crt)
        row.closing_brl_contract = q(closing * crt)
        row.opening_brl_ptax = q(opening * quote.rate)
        row.interest_brl_ptax = q(gain * quote.rate)
        row.closing_brl_ptax = q(closing * quote.rate)
        row.contract_rate = crt
        row.ptax_rate = quote.rate
        row.fx_source = quote.source
        row.degraded = quote.degraded
        row.fx_variation = q(opening * quote.rate - opening * crt)
        row.fx_variation_pct = q((quote.rate / crt - _1) * _100)
        row.cumulative_interest = q(cum.origin)
        row.cumulative_interest_brl_contract = q(cum.contract)
        row.cumulative_interest_brl_ptax = q(cum.ptax)
        row.paid = paid
        row.interest_paid = q(ipd)
        row.principal_paid = q(ppd)
        row.pending_interest = q(rep.regs.pending)

        out.append(row)

        d0, no = d1, no + 1

    _LOG.debug(f'accrual of "{contract.id}" from {start} to {end} built with {len(out)} periods')

    return out
# }}}

# Public API. Amortization schedule. {{{
@dataclasses.dataclass
class ScheduleRow:
    no: int = 0

    date: datetime.date = datetime.date.min

    opening: decimal.Decimal = _0

    payment: decimal.Decimal = _0

    interest: decimal.Decimal = _0

    principal: decimal.Decimal = _0

    closing: decimal.Decimal = _0

    # Periodic rate.
    rate: decimal.Decimal = _0

@typeguard.typechecked
def amortize(
    principal: decimal.Decimal,
    rate: decimal.Decimal,
    installments: int,
    system: _SYSTEM,
    zero_date: datetime.date, *,
    periodicity: _PERIODICITY = 'MONTHLY',
    grace_periods: int = 0,
    grace_type: _GRACE = 'INTEREST_ONLY',
    first_payment_date: t.Optional[datetime.date] = None,
    rounding: _ROUNDING = 'HALF_UP'
) -> t.Generator[ScheduleRow, None, None]:
    '''
    Builds a fixed amortization schedule at a periodic RATE.

      • PRICE, level payments, "P × r × (1 + r)ⁿ / ((1 + r)ⁿ − 1)". A zero rate degenerates into "P / n".

      • SAC, level principal, "P / n". Interest is paid over the declining balance.

      • BULLET, interest only, the principal paid at the last installment.

      • COMPOUND_ONLY, no payments. Interest is capitalised, and everything is paid at the last installment.

    Grace periods precede the installments. The installments are numbered after them.

    Values are bookkept in cents. The last installment amortizes whatever is left, so the schedule always ends at zero.

    >>> from decimal import Decimal
    >>> from datetime import date
    >>>
    >>> rows = list(amortize(Decimal(1000), Decimal('0.01'), 3, 'PRICE', date(2025, 1, 1)))
    >>> [(x.no, str(x.date), str(x.payment), str(x.interest), str(x.principal), str(x.closing)) for x in rows]  # doctest: +NORMALIZE_WHITESPACE
    [(1, '2025-02-01', '340.02', '10.00', '330.02', '669.98'),
     (2, '2025-03-01', '340.02', '6.70', '333.32', '336.66'),
     (3, '2025-04-01', '340.03', '3.37', '336.66', '0.00')]
    '''

    if installments < 1:
        raise ValueError('"installments" must be greater than, or equal to, one')

    if grace_periods < 0:
        raise ValueError('"grace_periods" must not be negative')

    if principal < 0:
        raise ValueError('"principal" must not be negative')

    if rate <= -1:
        raise ValueError('"rate" must be greater than minus one')

    q = _quantizer(rounding)
    step = dateutil.relativedelta.relativedelta(months=_PERIODICITY_MONTHS[periodicity])
    first = first_payment_date or zero_date + step
    bal = q(principal)
    no = 0

    # 1. Grace.
    for _ in range(grace_periods):
        gain = q(bal * rate)
        row = ScheduleRow(no=no + 1, date=first + step * no, opening=bal, interest=gain, rate=rate)

        if grace_type == 'FULL':
            bal = bal + gain

        else:
            row.payment = gain

        row.closing = bal
        no = no + 1

        yield row

    # 2. Installments.
    pmt = q(calculate_pmt(bal, rate, installments))
    lvl = q(bal / installments)

    for i in range(1, installments + 1):
        gain = q(bal * rate)
        last = i == installments

        if last:
            amrt = bal

        elif system == 'PRICE':
            amrt = min(max(pmt - gain, _0), bal)

        elif system == 'SAC':
            amrt = min(lvl, bal)

        else:
            amrt = _0

        if system == 'COMPOUND_ONLY' and not last:
            row = ScheduleRow(no=no + 1, date=first + step * no, opening=bal, payment=_0, interest=gain, principal=_0, closing=bal + gain, rate=rate)
            bal = bal + gain

        elif system == 'COMPOUND_ONLY':
            row = ScheduleRow(no=no + 1, date=first + step * no, opening=bal, payment=bal + gain, interest=gain, principal=amrt, closing=_0, rate=rate)
            bal = _0

        else:
            row = ScheduleRow(no=no + 1, date=first + step * no, opening=bal, payment=gain + amrt, interest=gain, principal=amrt, closing=bal - amrt, rate=rate)
            bal = bal - amrt

        no = no + 1

        yield row

@typeguard.typechecked
def build_schedule(
    contract: LoanContract, *,
    fx: FxRateBackend = _FX,
    curve: RateCurveBackend = _CURVE,
    rate_mode: _RATE_MODE = 'BASE',
    strict: bool = False
) -> t.List[ScheduleRow]:
    '''
    Fixed payment schedule of a contract with a SCHEDULED, or BULLET, payment flow.

    The periodic rate is the contract rate resolved over one regular period from the start date. A BULLET flow has a
    single installment at maturity.
    '''

    flw = contract.payment_flow
    kwa = {}

    if flw.type == 'SCHEDULED' and flw.scheduled is not None:
        sch = flw.scheduled
        end = contract.start_date + dateutil.relativedelta.relativedelta(months=_PERIODICITY_MONTHS[sch.periodicity])

        kwa['installments'] = sch.installments
        kwa['system'] = sch.system
        kwa['periodicity'] = sch.periodicity
        kwa['grace_periods'] = sch.grace_periods
        kwa['grace_type'] = sch.grace_type
        kwa['first_payment_date'] = sch.first_payment_date

    elif flw.type == 'BULLET':
        end = contract.maturity_date

        kwa['installments'] = 1
        kwa['system'] = 'BULLET'
        kwa['first_payment_date'] = contract.maturity_date

    else:
        raise ValueError(f'contract "{contract.id}" has no fixed payment schedule, its flow is {flw.type}')

    kwa['principal'] = contract.principal_origin
    kwa['rate'] = resolve_rate(contract, contract.start_date, end, fx=fx, curve=curve, rate_mode=rate_mode, strict=strict)
    kwa['zero_date'] = contract.start_date
    kwa['rounding'] = contract.interest.rounding

    out = list(amortize(**kwa))

    _LOG.info(f'schedule of "{contract.id}" generated with {len(out)} installments')

    return out
# }}}

# Public API. Contract store. {{{
class ContractStore:
    def get(self, contract_id: str) -> t.Tuple[LoanContract, t.Tuple[LedgerEntry, ...]]:
        '''
        Returns an immutable snapshot of a contract and its ledger. Raises ContractNotFound for unknown ids.
        '''

        raise NotImplementedError()

    def append(self, contract_id: str, entry: LedgerEntry, expected: t.Optional[int] = None) -> None:
        '''
        Appends an entry to the ledger of a contract.

        If "expected" is given, the ledger must still have that many entries, otherwise LedgerConflict is raised and
        nothing is appended. Callers pass the length of the snapshot they validated the entry against.
        '''

        raise NotImplementedError()

class InMemoryStore(ContractStore):
    '''
    Contracts and ledgers kept in memory.

    Snapshots are copies, and ledgers are tuples: a build reading a snapshot never sees a concurrent append.
    '''

    def __init__(self):
        self._lock = threading.Lock()
        self._contracts: t.Dict[str, LoanContract] = {}
        self._ledgers: t.Dict[str, t.Tuple[LedgerEntry, ...]] = {}

    @typeguard.typechecked
    def put(self, contract: LoanContract, ledger: t.Sequence[LedgerEntry] = ()) -> None:
        '''Registers a new contract. Validates it first.'''

        validate_contract(contract)

        with self._lock:
            if contract.id in self._contracts:
                raise ValueError(f'contract "{contract.id}" already exists')

            self._contracts[contract.id] = copy.deepcopy(contract)
            self._ledgers[contract.id] = tuple(ledger)

    @typeguard.typechecked
    def replace(self, contract: LoanContract) -> None:
        '''Administrative update of an existing contract. The ledger is kept.'''

        validate_contract(contract)

        with self._lock:
            if contract.id not in self._contracts:
                raise ContractNotFound(f'contract "{contract.id}" not found')

            self._contracts[contract.id] = copy.deepcopy(contract)

    @typeguard.typechecked
    def get(self, contract_id: str) -> t.Tuple[LoanContract, t.Tuple[LedgerEntry, ...]]:
        with self._lock:
            if contract_id not in self._contracts:
                raise ContractNotFound(f'contract "{contract_id}" not found')

            return copy.deepcopy(self._contracts[contract_id]), self._ledgers[contract_id]

    @typeguard.typechecked
    def append(self, contract_id: str, entry: LedgerEntry, expected: t.Optional[int] = None) -> None:
        with self._lock:
            if contract_id not in self._contracts:
                raise ContractNotFound(f'contract "{contract_id}" not found')

            if expected is not None and len(self._ledgers[contract_id]) != expected:
                raise LedgerConflict(f'ledger of "{contract_id}" has {len(self._ledgers[contract_id])} entries, expected {expected}')

            self._ledgers[contract_id] = self._ledgers[contract_id] + (entry,)
# }}}

# Public API. Formulas. {{{
def _sentinel(func: t.Callable[..., t.Any]) -> t.Callable[..., t.Any]:
    '''Turns the errors of a formula into sentinel values.'''

    @functools.wraps(func)
    def wrapper(*args: t.Any, **kwargs: t.Any) -> t.Any:
        name = func.__name__.upper()

        try:
            return func(*args, **kwargs)

        except ContractNotFound as exc:
            _LOG.warning(f'{name}: {exc}')

            return NOT_AVAILABLE

        except InvalidDateRange as exc:
            _LOG.warning(f'{name}: {exc}')

            return DATE_ERROR

        except (MissingRateData, ConversionUnavailable) as exc:
            _LOG.warning(f'{name}: {exc}')

            return RATE_ERROR

        except (LoanError, ValueError, TypeError, ArithmeticError, typeguard.TypeCheckError) as exc:
            _LOG.warning(f'{name}: {exc}')

            return ERROR

    return wrapper

class Formulas:
    '''
    Spreadsheet formula entry points.

    A formula returns a value or a sentinel ("#N/A", "#DATE!", "#RATE!", "#ERROR"), never an exception. Dates may be
    given as dates or ISO strings; amounts as decimals, integers or strings.

    >>> from decimal import Decimal
    >>> from datetime import date
    >>>
    >>> store = InMemoryStore()
    >>> legs = [InterestLeg(indexer='FIXED', spread_annual=Decimal(12))]
    >>> store.put(LoanContract('C-1', 'Bank', 'BRL', Decimal(1000000), date(2025, 1, 1), date(2026, 1, 1), InterestConfig(legs)))
    >>> fml = Formulas(store)
    >>> fml.call('BALANCE', 'C-1', '2025-02-01')
    Decimal('1009488.79')
    >>> fml.call('BALANCE', 'C-2', '2025-02-01')
    '#N/A'
    '''

    # Formula names, as the host registers them.
    NAMES = {
        'BALANCE': 'balance',
        'INTEREST': 'interest',
        'ACCRUAL': 'accrual',
        'SCHEDULE': 'schedule',
        'PAY': 'pay',
        'STATUS': 'status',
        'PMT': 'pmt',
        'NEXT.PAYMENT': 'next_payment',
        'NEXT.AMOUNT': 'next_amount',
    }

    def __init__(self, store: ContractStore, *, fx: FxRateBackend = _FX, curve: RateCurveBackend = _CURVE):
        self.store = store
        self.fx = fx
        self.curve = curve

    def call(self, name: str, *args: t.Any, **kwargs: t.Any) -> t.Any:
        if name.upper() not in self.NAMES:
            return NAME_ERROR

        return getattr(self, self.NAMES[name.upper()])(*args, **kwargs)

    @staticmethod
    def _date(value: t.Any) -> datetime.date:
        return datetime.date.today() if value in (None, '') else _to_date(value)

    @_sentinel
    def balance(self, contract_id: str, date: t.Any = None, currency: t.Optional[str] = None) -> t.Any:
        contract, ledger = self.store.get(contract_id)
        day = self._date(date)
        pos = balance_at(contract, ledger, day, fx=self.fx, curve=self.curve)
        cur = (currency or contract.currency).upper()

        if cur == contract.currency:
            return pos.balance

        brl = pos.balance * mark_to_market_rate(contract, day, fx=self.fx).rate

        return _quantizer(contract.interest.rounding)(brl if cur == 'BRL' else self.fx.convert(brl, 'BRL', cur, day))

    @_sentinel
    def interest(self, contract_id: str, start: t.Any, end: t.Any) -> t.Any:
        contract, ledger = self.store.get(contract_id)
        rows = build_accrual(contract, ledger, _to_date(start), _to_date(end), 'DAILY', fx=self.fx, curve=self.curve)

        return rows[-1].cumulative_interest if rows else _0

    @_sentinel
    def accrual(self, contract_id: str, start: t.Any, end: t.Any, freq: str = 'MONTHLY', rate_mode: str = 'BASE', fx_mode: str = 'DAILY') -> t.Any:
        contract, ledger = self.store.get(contract_id)
        kwa = {}

        kwa['frequency'] = _enum(freq, _FREQUENCY, 'freq')
        kwa['rate_mode'] = _enum(rate_mode, _RATE_MODE, 'rate_mode')
        kwa['fx_mode'] = _enum(fx_mode, _FX_MODE, 'fx_mode')

        return build_accrual(contract, ledger, _to_date(start), _to_date(end), fx=self.fx, curve=self.curve, **kwa)

    @_sentinel
    def schedule(self, contract_id: str) -> t.Any:
        contract, _ = self.store.get(contract_id)

        if contract.payment_flow.type not in ('SCHEDULED', 'BULLET'):
            return NOT_AVAILABLE

        return build_schedule(contract, fx=self.fx, curve=self.curve)

    @_sentinel
    def pay(self, contract_id: str, date: t.Any, amount: t.Any, currency: t.Optional[str] = None, allocation: str = 'AUTO', interest_portion: t.Any = None) -> t.Any:
        '''
        Books a payment and returns the balance right after it. The ledger is only appended to when the replay
        including the payment succeeds, and only if no other entry was booked since the snapshot it was validated
        against. A concurrent payment yields "#ERROR".
        '''

        contract, ledger = self.store.get(contract_id)
        kwa = {}

        kwa['date'] = _to_date(date)
        kwa['amount'] = _to_decimal(amount)
        kwa['currency'] = (currency or contract.currency).upper()
        kwa['allocation'] = _enum(allocation, _ALLOCATION, 'allocation')
        kwa['interest_portion'] = _to_decimal(interest_portion) if interest_portion not in (None, '') else None

        entry = LedgerEntry(**kwa)
        prior = balance_at(contract, ledger, entry.date, fx=self.fx, curve=self.curve)

        validate_payment(contract, entry, prior.status)

        positions = reconcile(contract, ledger + (entry,), fx=self.fx, curve=self.curve, until=entry.date)

        self.store.append(contract_id, entry, expected=len(ledger))

        return positions[-1].balance

    @_sentinel
    def status(self, contract_id: str, date: t.Any = None) -> t.Any:
        contract, ledger = self.store.get(contract_id)

        return contract_status(contract, ledger, self._date(date), fx=self.fx, curve=self.curve)

    @_sentinel
    def pmt(self, contract_id: str) -> t.Any:
        rows = self.schedule(contract_id)

        if not isinstance(rows, list):
            return rows

        contract, _ = self.store.get(contract_id)
        sch = contract.payment_flow.scheduled
        skip = sch.grace_periods if sch else 0

        return rows[skip].payment if len(rows) > skip else NOT_AVAILABLE

    @_sentinel
    def next_payment(self, contract_id: str, date: t.Any = None) -> t.Any:
        row = self._next_row(contract_id, date)

        return row.date if isinstance(row, ScheduleRow) else row

    @_sentinel
    def next_amount(self, contract_id: str, date: t.Any = None) -> t.Any:
        row = self._next_row(contract_id, date)

        return row.payment if isinstance(row, ScheduleRow) else row

    def _next_row(self, contract_id: str, date: t.Any) -> t.Any:
        rows = self.schedule(contract_id)
        day = self._date(date)

        if not isinstance(rows, list):
            return rows

        return next((x for x in rows if x.date > day), NOT_AVAILABLE)
# }}}

# Log current version info.
_LOG.info(f'Loancore version {__version__} initialized')

if __name__ == '__main__':
    import doctest

    doctest.testmod()

# vi:fdm=marker:
