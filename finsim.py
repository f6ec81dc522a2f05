# Copyright (C) Inco - All Rights Reserved.
#
# Unauthorized copying of this file, via any medium, is strictly prohibited. Proprietary and confidential.
#
# [ROUNDING]
#
# Unlike a payments table that rounds only on output, this module rounds every monetary value to cents as soon as it
# is produced: interest, amortization, correction, extras and the balance itself. The resulting figures are the ones a
# borrower sees on a bank statement, and they must match them to the cent even after hundreds of periods.
#
#   • Rates are never rounded. Only money is.
#
#   • Totals are accumulated from the rounded row values and quantized once more at the end. The second quantization
#     is a no-op, but it keeps the rounding policy explicit in a single place, "summarize".
#
# [CONTRIBUTION TIMING]
#
# The investment simulators this module replaced disagreed on when the monthly contribution enters the balance. Some
# added it before computing the month's interest, some after. That is one month of interest over each contribution.
# Here it is an explicit policy, "timing", and it defaults to the start of the month.
#
# [IOF]
#
# The IOF friction is a simplification. The regulatory table decays from 96% of the yield at day one to zero at day
# thirty. This module applies a single scalar factor to the interest of the first period only. The factor is a
# parameter; "calculate_iof_rate" gives the table value for a number of elapsed days.
#
# [WEAKNESSES]
#
#   • Price installments are computed once, over the initial principal. Balance correction (TR, IPCA) does not
#     recalculate them, so the residue of the correction is settled on the last period.
#
#   • The tax bracket counts a month as 30 days unless the "actual" day count is requested and a start date is known.
#

'''
Finsim, a financial projection core.

Computes month by month schedules for loans and investments from a small set of parameters: principal, rate, term,
and contribution pattern.

Loans are amortized under the Price (fixed installment) or SAC (fixed amortization) systems, with optional periodic
fees, extraordinary amortizations and monthly balance correction by an index (TR or IPCA).

Investments compound monthly with periodic and one-off contributions, an optional IOF friction on the first period,
and the regressive income tax withheld at redemption, unless the product is exempt.

Rates may be fixed (PRE), a percentage of the CDI, or IPCA plus a real spread.
'''

# Python.
import sys
import types
import typing as t
import decimal
import logging
import datetime
import functools
import dataclasses
import importlib.metadata

# Libs.
import typeguard
import dateutil.relativedelta

# Finsim version.
__version__ = importlib.metadata.version('finsim') if 'finsim' in importlib.metadata.packages_distributions() else 'DEV'

# Logger object.
_LOG = logging.getLogger('finsim')

# Zero as decimal.
_0 = decimal.Decimal()

# One as decimal.
_1 = decimal.Decimal(1)

# One hundred as decimal.
_100 = decimal.Decimal(100)

# Centi factor.
_CENTI = decimal.Decimal('0.01')

# Half a cent. A balance at or below this value is considered settled.
_EPSILON = decimal.Decimal('0.005')

# Centesimal quantization.
_Q = functools.partial(decimal.Decimal.quantize, exp=_CENTI, rounding=decimal.ROUND_HALF_UP)

# A month.
_MONTH = dateutil.relativedelta.relativedelta(months=1)

# Bucket key for rows without a date.
_NO_DATE = 'no-date'

# Income tax table for fixed income investments. Bounds are in days, lower exclusive, upper inclusive.
_BRAZIL_TAX_BRACKETS = [
    (0, 180, decimal.Decimal('0.225')),
    (180, 360, decimal.Decimal('0.2')),
    (360, 720, decimal.Decimal('0.175')),
    (720, sys.maxsize, decimal.Decimal('0.15'))
]

# IOF regressive table, in percent of the yield, for redemptions from day 1 to day 30 (Decree 6.306/2007, annex).
_IOF_TABLE = tuple(decimal.Decimal(x) / _100 for x in (
    96, 93, 90, 86, 83, 80, 76, 73, 70, 66,
    63, 60, 56, 53, 50, 46, 43, 40, 36, 33,
    30, 26, 23, 20, 16, 13, 10, 6, 3, 0
))

# Default IOF friction factor over the first period interest.
_IOF_FACTOR = decimal.Decimal('0.30')

# Rate codes: fixed, CDI linked, and IPCA plus spread.
_RATE_CODE = t.Literal['PRE', 'CDI', 'IPCA']

# Periodicity of a fixed rate.
_RATE_PERIOD = t.Literal['annual', 'monthly']

# Balance correction indexes.
_CORRECTION_INDEX = t.Literal['TR', 'IPCA']

# Amortization systems.
_METHOD = t.Literal['PRICE', 'SAC']

# Simulation kinds.
_KIND = t.Literal['LOAN', 'INVESTMENT']

# Contribution timing within a period.
_TIMING = t.Literal['start', 'end']

# Day count convention for the income tax bracket.
_DAY_COUNT = t.Literal['30/360', 'actual']

# Fixed income products.
_PRODUCT = t.Literal['CDB', 'LC', 'RDB', 'Tesouro', 'Debênture', 'LCI', 'LCA', 'CRI', 'CRA', 'Poupança', 'Debênture Incentivada']

# Products exempt from income tax for individuals.
_TAX_EXEMPT = frozenset(['LCI', 'LCA', 'CRI', 'CRA', 'Poupança', 'Debênture Incentivada'])

# Helpers. {{{
@typeguard.typechecked
def _delta_months(d1: datetime.date, d2: datetime.date) -> int:
    '''
    Returns the number of months from D2 to D1, ignoring the day of the month.

    >>> from datetime import date
    >>>
    >>> _delta_months(date(2024, 3, 31), date(2024, 3, 1))
    0
    >>> _delta_months(date(2024, 4, 1), date(2024, 3, 31))
    1
    >>> _delta_months(date(2025, 2, 10), date(2024, 2, 20))
    12

    Deltas will be negative if D2 > D1.

    >>> _delta_months(date(2024, 1, 5), date(2024, 7, 5))
    -6
    '''

    return (d1.year - d2.year) * 12 + d1.month - d2.month

@typeguard.typechecked
def _num(value: t.Optional[decimal.Decimal]) -> decimal.Decimal:
    '''
    Normalizes a missing or NaN value to zero.

    >>> _num(None)
    Decimal('0')
    >>> _num(decimal.Decimal('NaN'))
    Decimal('0')
    >>> _num(decimal.Decimal('1.5'))
    Decimal('1.5')
    '''

    if value is None or value.is_nan():
        return _0

    return value

def _due_date(start_date: t.Optional[datetime.date], no: int) -> t.Optional[datetime.date]:
    '''Date of period NO, where period one falls on the start date.'''

    if start_date:
        return start_date + _MONTH * (no - 1)

    return None

@typeguard.typechecked
def _elapsed_days(term: int, start_date: t.Optional[datetime.date], day_count: _DAY_COUNT) -> int:
    '''
    Days elapsed over TERM months, used to pick the income tax bracket.

    >>> from datetime import date
    >>>
    >>> _elapsed_days(6, None, '30/360')
    180
    >>> _elapsed_days(6, date(2024, 1, 1), 'actual')
    182
    '''

    if day_count == 'actual' and start_date:
        return (start_date + _MONTH * term - start_date).days

    elif day_count == 'actual':
        _LOG.warning('the "actual" day count requires a start date, falling back to 30/360')

    return term * 30
# }}}

# Public API. Main classes. {{{
@dataclasses.dataclass(frozen=True)
class Rate:
    '''
    A nominal rate, in percent.

      • "PRE" is a fixed rate, "value", either annual or monthly as stated by "period".

      • "CDI" is a percentage of the CDI, "cdi_percentage", over an annual CDI rate, "cdi_rate".

      • "IPCA" is an annual inflation rate, "ipca_rate", composed with an annual real spread, "spread".

    Only the fixed rate may be monthly. CDI and IPCA figures are always annual.
    '''

    code: _RATE_CODE = 'PRE'

    value: decimal.Decimal = _0

    period: _RATE_PERIOD = 'annual'

    cdi_percentage: decimal.Decimal = _100

    cdi_rate: decimal.Decimal = _0

    ipca_rate: decimal.Decimal = _0

    spread: decimal.Decimal = _0

@dataclasses.dataclass(frozen=True)
class Extra:
    '''
    An extraordinary payment: an extra amortization for loans, a one-off contribution for investments.

    The period of the extra comes from its date, relative to the simulation start date, or from "no" when there is no
    start date. Period one is the month of the start date. A date in an earlier month is invalid.
    '''

    value: decimal.Decimal

    date: t.Optional[datetime.date] = None

    no: t.Optional[int] = None

@dataclasses.dataclass(frozen=True)
class SimulationParameters:
    '''
    Input of a simulation.

    Fields shared by both kinds of simulation.

      • "kind", is either "LOAN" or "INVESTMENT".

      • "principal", is the loan principal, or the initial contribution of an investment.

      • "rate", is the nominal rate. See the Rate class.

      • "term", is the number of months.

      • "start_date", is the date of the first period. Optional. Without it rows have no dates, extras must state their
        period numbers, and the balance is never corrected.

      • "contribution", is the monthly contribution of an investment, or the monthly extra amortization of a loan.

      • "extras", is a sequence of one-off extraordinary payments. See the Extra class.

    Loan fields.

      • "method", is the amortization system, "PRICE" or "SAC".

      • "fee", is a flat charge added to every installment.

      • "index", is a correction lookup, mapping the first day of a month to the fraction by which the balance is
        corrected in that month. See "get_index_lookup".

    Investment fields.

      • "product", is the product type. Some types are exempt from income tax.

      • "iof" and "iof_factor", enable and configure the IOF friction on the first period.

      • "timing", is when contributions enter the balance, at the "start" or at the "end" of each period.

      • "day_count", is how elapsed days are counted for the income tax bracket.
    '''

    kind: _KIND

    principal: decimal.Decimal

    rate: Rate

    term: int

    start_date: t.Optional[datetime.date] = None

    contribution: decimal.Decimal = _0

    extras: t.Tuple[Extra, ...] = ()

    method: _METHOD = 'PRICE'

    fee: decimal.Decimal = _0

    index: t.Optional[t.Mapping[datetime.date, decimal.Decimal]] = None

    product: _PRODUCT = 'CDB'

    iof: bool = False

    iof_factor: decimal.Decimal = _IOF_FACTOR

    timing: _TIMING = 'start'

    day_count: _DAY_COUNT = '30/360'

@dataclasses.dataclass(frozen=True)
class PeriodRow:
    '''
    An entry of a schedule.

      • "no" is the period's number, starting at one.

      • "date" is the date of the period, or None if the simulation has no start date.

      • "gain" is the interest of the period.

      • "extra" is the extraordinary amount of the period.

      • "bal" is the balance at the end of the period.
    '''

    no: int = 0

    date: t.Optional[datetime.date] = None

    gain: decimal.Decimal = _0

    extra: decimal.Decimal = _0

    bal: decimal.Decimal = _0

@dataclasses.dataclass(frozen=True)
class Installment(PeriodRow):
    '''
    An entry of a loan schedule.

    Besides the fields of the base class:

      • "raw" is the installment: amortization plus interest plus fee. Extras are paid apart.

      • "amort" is the regular principal amortization.

      • "fee" is the periodic fee.

      • "corr" is the correction added to the balance before interest was computed.
    '''

    raw: decimal.Decimal = _0

    amort: decimal.Decimal = _0

    fee: decimal.Decimal = _0

    corr: decimal.Decimal = _0

@dataclasses.dataclass(frozen=True)
class Accrual(PeriodRow):
    '''
    An entry of an investment schedule.

    Besides the fields of the base class, "contrib" is the periodic contribution, and "iof" is the friction withheld
    from the period's interest. The "gain" field is net of it.
    '''

    contrib: decimal.Decimal = _0

    iof: decimal.Decimal = _0

@dataclasses.dataclass(frozen=True)
class Summary:
    '''
    Totals of a schedule.

      • "periods" is the number of periods executed. A loan may be paid off before its term.

      • "total_paid" is what the borrower paid, installments plus extras; or what the investor contributed, initial
        contribution included.

      • "total_interest" is the interest over all periods. For investments, the gross yield.

      • "first_payment" is the first installment of a loan. Zero for investments.

      • "gross_balance" is the balance after the last period. "net_balance" deducts the withheld tax, "tax".
    '''

    periods: int = 0

    total_paid: decimal.Decimal = _0

    total_interest: decimal.Decimal = _0

    total_fees: decimal.Decimal = _0

    total_extra: decimal.Decimal = _0

    total_correction: decimal.Decimal = _0

    total_iof: decimal.Decimal = _0

    first_payment: decimal.Decimal = _0

    gross_balance: decimal.Decimal = _0

    tax: decimal.Decimal = _0

    net_balance: decimal.Decimal = _0

@dataclasses.dataclass
class Bucket:
    '''Yearly totals: interest, "gain"; and principal amortized or contributed, extras included, "amort".'''

    key: t.Union[int, str] = _NO_DATE

    gain: decimal.Decimal = _0

    amort: decimal.Decimal = _0

@dataclasses.dataclass(frozen=True)
class Simulation:
    '''Output of a simulation: the rows, their summary, and the yearly buckets.'''

    rows: t.List[PeriodRow]

    summary: Summary

    buckets: t.Dict[t.Union[int, str], Bucket]
# }}}

# Public API. Index storage backends. {{{
class BackendError(Exception):
    pass

@dataclasses.dataclass
class MonthlyIndex:
    date: datetime.date = datetime.date.min

    value: decimal.Decimal = _0

class IndexStorageBackend:
    def get_tr_indexes(self, begin: datetime.date, end: datetime.date) -> t.Generator[MonthlyIndex, None, None]:
        '''
        Returns the list of monthly TR indexes, in percent, between the begin and end date.

        The begin and end dates are inclusive. Months are represented by their first day.
        '''

        raise NotImplementedError()

    def get_ipca_indexes(self, begin: datetime.date, end: datetime.date) -> t.Generator[MonthlyIndex, None, None]:
        '''
        Returns the list of monthly IPCA indexes, in percent, between the begin and end date.
        '''

        raise NotImplementedError()

class InMemoryBackend(IndexStorageBackend):
    '''
    A static backend, holding monthly IPCA indexes from 2018-01 to 2022-11.

    It keeps no TR indexes. Subclasses may override "_registry_tr" with a tuple of "(month, percent)" pairs.

    Not suited for production: it does not update itself as new indexes are published.
    '''

    # A repository of TR indexes.
    _registry_tr: t.Tuple[t.Tuple[datetime.date, decimal.Decimal], ...] = ()

    # A repository of IPCA indexes.
    _registry_ipca = (
        (datetime.date(2018, 1, 1),  decimal.Decimal('0.29')),  (datetime.date(2018, 2, 1),  decimal.Decimal('0.32')),   # NOQA
        (datetime.date(2018, 3, 1),  decimal.Decimal('0.09')),  (datetime.date(2018, 4, 1),  decimal.Decimal('0.22')),   # NOQA
        (datetime.date(2018, 5, 1),  decimal.Decimal('0.40')),  (datetime.date(2018, 6, 1),  decimal.Decimal('1.26')),   # NOQA
        (datetime.date(2018, 7, 1),  decimal.Decimal('0.33')),  (datetime.date(2018, 8, 1),  decimal.Decimal('-0.09')),  # NOQA
        (datetime.date(2018, 9, 1),  decimal.Decimal('0.48')),  (datetime.date(2018, 10, 1), decimal.Decimal('0.45')),   # NOQA
        (datetime.date(2018, 11, 1), decimal.Decimal('-0.21')), (datetime.date(2018, 12, 1), decimal.Decimal('0.15')),   # NOQA
        (datetime.date(2019, 1, 1),  decimal.Decimal('0.32')),  (datetime.date(2019, 2, 1),  decimal.Decimal('0.43')),   # NOQA
        (datetime.date(2019, 3, 1),  decimal.Decimal('0.75')),  (datetime.date(2019, 4, 1),  decimal.Decimal('0.57')),   # NOQA
        (datetime.date(2019, 5, 1),  decimal.Decimal('0.13')),  (datetime.date(2019, 6, 1),  decimal.Decimal('0.01')),   # NOQA
        (datetime.date(2019, 7, 1),  decimal.Decimal('0.19')),  (datetime.date(2019, 8, 1),  decimal.Decimal('0.11')),   # NOQA
        (datetime.date(2019, 9, 1),  decimal.Decimal('-0.04')), (datetime.date(2019, 10, 1), decimal.Decimal('0.10')),   # NOQA
        (datetime.date(2019, 11, 1), decimal.Decimal('0.51')),  (datetime.date(2019, 12, 1), decimal.Decimal('1.15')),   # NOQA
        (datetime.date(2020, 1, 1),  decimal.Decimal('0.21')),  (datetime.date(2020, 2, 1),  decimal.Decimal('0.25')),   # NOQA
        (datetime.date(2020, 3, 1),  decimal.Decimal('0.07')),  (datetime.date(2020, 4, 1),  decimal.Decimal('-0.31')),  # NOQA
        (datetime.date(2020, 5, 1),  decimal.Decimal('-0.38')), (datetime.date(2020, 6, 1),  decimal.Decimal('0.26')),   # NOQA
        (datetime.date(2020, 7, 1),  decimal.Decimal('0.36')),  (datetime.date(2020, 8, 1),  decimal.Decimal('0.24')),   # NOQA
        (datetime.date(2020, 9, 1),  decimal.Decimal('0.64')),  (datetime.date(2020, 10, 1), decimal.Decimal('0.86')),   # NOQA
        (datetime.date(2020, 11, 1), decimal.Decimal('0.89')),  (datetime.date(2020, 12, 1), decimal.Decimal('1.35')),   # NOQA
        (datetime.date(2021, 1, 1),  decimal.Decimal('0.25')),  (datetime.date(2021, 2, 1),  decimal.Decimal('0.86')),   # NOQA
        (datetime.date(2021, 3, 1),  decimal.Decimal('0.93')),  (datetime.date(2021, 4, 1),  decimal.Decimal('0.31')),   # NOQA
        (datetime.date(2021, 5, 1),  decimal.Decimal('0.83')),  (datetime.date(2021, 6, 1),  decimal.Decimal('0.53')),   # NOQA
        (datetime.date(2021, 7, 1),  decimal.Decimal('0.96')),  (datetime.date(2021, 8, 1),  decimal.Decimal('0.87')),   # NOQA
        (datetime.date(2021, 9, 1),  decimal.Decimal('1.16')),  (datetime.date(2021, 10, 1), decimal.Decimal('1.25')),   # NOQA
        (datetime.date(2021, 11, 1), decimal.Decimal('0.95')),  (datetime.date(2021, 12, 1), decimal.Decimal('0.73')),   # NOQA
        (datetime.date(2022, 1, 1),  decimal.Decimal('0.54')),  (datetime.date(2022, 2, 1),  decimal.Decimal('1.01')),   # NOQA
        (datetime.date(2022, 3, 1),  decimal.Decimal('1.62')),  (datetime.date(2022, 4, 1),  decimal.Decimal('1.06')),   # NOQA
        (datetime.date(2022, 5, 1),  decimal.Decimal('0.47')),  (datetime.date(2022, 6, 1),  decimal.Decimal('0.67')),   # NOQA
        (datetime.date(2022, 7, 1),  decimal.Decimal('-0.68')), (datetime.date(2022, 8, 1),  decimal.Decimal('-0.36')),  # NOQA
        (datetime.date(2022, 9, 1),  decimal.Decimal('-0.29')), (datetime.date(2022, 10, 1), decimal.Decimal('0.59')),   # NOQA
        (datetime.date(2022, 11, 1), decimal.Decimal('0.41'))
    )

    @staticmethod
    def _scan(registry: t.Sequence[t.Tuple[datetime.date, decimal.Decimal]], name: str, begin: datetime.date, end: datetime.date) -> t.Generator[MonthlyIndex, None, None]:
        if not registry:
            raise BackendError(f'this backend has no {name} indexes')

        for month, value in registry:
            if begin <= month <= end:
                yield MonthlyIndex(date=month, value=value)

    @typeguard.typechecked
    def get_tr_indexes(self, begin: datetime.date, end: datetime.date) -> t.Generator[MonthlyIndex, None, None]:
        yield from self._scan(self._registry_tr, 'TR', begin, end)

    @typeguard.typechecked
    def get_ipca_indexes(self, begin: datetime.date, end: datetime.date) -> t.Generator[MonthlyIndex, None, None]:
        yield from self._scan(self._registry_ipca, 'IPCA', begin, end)

@typeguard.typechecked
def get_index_lookup(
    backend: IndexStorageBackend,
    code: _CORRECTION_INDEX,
    begin: datetime.date,
    term: int
) -> t.Optional[t.Dict[datetime.date, decimal.Decimal]]:
    '''
    Resolves a correction lookup for a schedule starting at BEGIN and lasting TERM months.

    The returned dictionary maps the first day of each month to the correction fraction of that month, e.g., a TR of
    0.15% becomes "Decimal('0.0015')". Months the backend does not know are simply absent.

    This routine must run before the simulation. It will not raise if the backend fails. It logs a warning and returns
    None instead, so the schedule is computed without correction.
    '''

    first = begin.replace(day=1)
    last = first + _MONTH * max(term - 1, 0)
    func = backend.get_tr_indexes if code == 'TR' else backend.get_ipca_indexes

    try:
        return {x.date.replace(day=1): x.value / _100 for x in func(first, last)}

    except BackendError as exc:
        _LOG.warning(f'{code} indexes are unavailable, the schedule will not be corrected: {exc}')

        return None
# }}}

# Public API. Rates. {{{
@functools.cache
@typeguard.typechecked
def calculate_interest_factor(rate: decimal.Decimal, period: decimal.Decimal, percent: bool = True) -> decimal.Decimal:
    '''Calculates the interest factor given a rate and a period, "(1 + rate) ^ period".'''

    if percent:
        rate = rate / _100

    if rate:
        return (_1 + rate) ** period

    else:
        return _1

@typeguard.typechecked
def calculate_effective_annual_rate(rate: Rate) -> decimal.Decimal:
    '''
    Calculates the effective annual rate, as a fraction, of a nominal rate.

    IPCA and the spread are composed, not added.

    >>> calculate_effective_annual_rate(Rate('IPCA', ipca_rate=decimal.Decimal(4), spread=decimal.Decimal(6)))
    Decimal('0.1024')
    >>> calculate_effective_annual_rate(Rate('CDI', cdi_percentage=decimal.Decimal(110), cdi_rate=decimal.Decimal(10)))
    Decimal('0.11')
    '''

    if rate.code == 'CDI':
        return _num(rate.cdi_percentage) / _100 * _num(rate.cdi_rate) / _100

    elif rate.code == 'IPCA':
        return (_1 + _num(rate.ipca_rate) / _100) * (_1 + _num(rate.spread) / _100) - _1

    elif rate.period == 'monthly':
        return calculate_interest_factor(_num(rate.value), decimal.Decimal(12)) - _1

    else:
        return _num(rate.value) / _100

@typeguard.typechecked
def calculate_monthly_rate(rate: Rate) -> decimal.Decimal:
    '''
    Converts a nominal rate to an effective monthly rate, as a fraction.

    Annual rates are converted by "(1 + a) ^ (1 / 12) - 1". A monthly fixed rate is taken as is.

    >>> calculate_monthly_rate(Rate('PRE', decimal.Decimal('1.5'), 'monthly'))
    Decimal('0.015')
    >>> calculate_monthly_rate(Rate('PRE', decimal.Decimal(0)))
    Decimal('0')
    '''

    if rate.code == 'PRE' and rate.period == 'monthly':
        return _num(rate.value) / _100

    return calculate_interest_factor(calculate_effective_annual_rate(rate), _1 / decimal.Decimal(12), percent=False) - _1

@typeguard.typechecked
def calculate_price_installment(principal: decimal.Decimal, rate: decimal.Decimal, term: int) -> decimal.Decimal:
    '''
    Calculates the fixed installment of a Price loan, rounded to cents.

    >>> calculate_price_installment(decimal.Decimal(100000), decimal.Decimal('0.01'), 12)
    Decimal('8884.88')
    >>> calculate_price_installment(decimal.Decimal(1200), decimal.Decimal(0), 12)
    Decimal('100.00')
    '''

    if term <= 0:
        raise ValueError('"term" must be a greater than, or equal to, one')

    if not rate:
        return _Q(principal / term)

    fac = (_1 + rate) ** term

    return _Q(principal * rate * fac / (fac - _1))
# }}}

# Public API. Schedules. {{{
@typeguard.typechecked
def _plan_extras(extras: t.Sequence[Extra], term: int, start_date: t.Optional[datetime.date]) -> t.Dict[int, decimal.Decimal]:
    '''Sums the extras of each period, validating them.'''

    plan: t.Dict[int, decimal.Decimal] = {}

    for i, x in enumerate(extras):
        if _num(x.value) <= _0:
            raise ValueError(f'invalid value for extra entry #{i} – should be positive')

        if x.date and not start_date:
            raise ValueError(f'"extras[{i}].date", {x.date}, requires a "start_date"')

        elif x.date and start_date:
            no = _delta_months(x.date, start_date) + 1

            if no < 1:
                raise ValueError(f'"extras[{i}].date", {x.date}, precedes the month of "start_date", {start_date}')

        elif x.no is not None:
            no = x.no

            if no < 1:
                raise ValueError(f'"extras[{i}].no", {no}, must be greater than, or equal to, one')

        else:
            raise ValueError(f'"extras[{i}]" must have either a date or a period number')

        if no > term:
            raise ValueError(f'"extras[{i}]" falls on period {no}, after the last period, {term}')

        plan[no] = plan.get(no, _0) + _Q(x.value)

    return plan

@typeguard.typechecked
def get_loan_schedule(
    principal: decimal.Decimal,
    rate: decimal.Decimal,
    term: int, *,
    method: _METHOD = 'PRICE',
    extras: t.Sequence[Extra] = (),
    periodic_extra: decimal.Decimal = _0,
    fee: decimal.Decimal = _0,
    start_date: t.Optional[datetime.date] = None,
    index: t.Optional[t.Mapping[datetime.date, decimal.Decimal]] = None
) -> t.Generator[Installment, None, None]:
    '''
    Generates the schedule of a loan.

    The three positional parameters are the principal, the effective monthly rate as a fraction (see
    "calculate_monthly_rate"), and the term in months. The remaining ones are associative.

      • "method", the amortization system.

        – "PRICE", a fixed installment, computed once over the principal. The amortization is what is left of it after
          interest.

        – "SAC", a fixed amortization, principal over term. The installment decreases with interest.

      • "extras", one-off extra amortizations. See the Extra class.

      • "periodic_extra", an extra amortization paid on every period.

      • "fee", a flat charge added to every installment.

      • "start_date", the date of the first installment.

      • "index", a correction lookup (see "get_index_lookup"). Requires "start_date". Before interest is computed, the
        balance is corrected by the fraction of the installment's month. Months without a fraction are not corrected.

    Extras never amortize beyond the balance. Once the balance is settled, no further installments are generated, so
    the schedule may end before its term. The last scheduled installment always settles the remaining balance.

    Every monetary value is rounded to cents as it is produced.
    '''

    # A. Validation and preparation.
    principal, rate, periodic_extra, fee = _num(principal), _num(rate), _num(periodic_extra), _num(fee)

    if term <= 0:
        raise ValueError('"term" must be a greater than, or equal to, one')

    if principal < _0:
        raise ValueError('"principal" must be greater than, or equal to, zero')

    if periodic_extra < _0:
        raise ValueError('"periodic_extra" must be greater than, or equal to, zero')

    if fee < _0:
        raise ValueError('"fee" must be greater than, or equal to, zero')

    if index is not None and not start_date:
        _LOG.warning('a correction lookup requires a "start_date", the balance will not be corrected')

    plan = _plan_extras(extras, term, start_date)
    periodic_extra, fee = _Q(periodic_extra), _Q(fee)
    pmt = calculate_price_installment(principal, rate, term) if method == 'PRICE' else _0
    sac = _Q(principal / term)
    bal = _Q(principal)
    no = 1

    # B. Amortize.
    while no <= term and bal > _EPSILON:
        due = _due_date(start_date, no)
        corr = _0

        # 1. Correct the balance.
        if due and index is not None:
            if (frac := index.get(due.replace(day=1))) is not None:
                corr = _Q(bal * _num(frac))
                bal = bal + corr

            else:
                _LOG.debug(f'no correction index for {due:%Y-%m}, the balance of period {no} is not corrected')

        # 2. Interest and regular amortization.
        gain = _Q(bal * rate)

        if no == term:
            amort = bal

        elif method == 'PRICE':
            amort = min(max(pmt - gain, _0), bal)

        else:
            amort = min(sac, bal)

        # 3. Extraordinary amortization.
        extra = min(plan.get(no, _0) + periodic_extra, max(_0, bal - amort))
        bal = max(_0, bal - amort - extra)

        yield Installment(no=no, date=due, raw=amort + gain + fee, amort=amort, gain=gain, fee=fee, extra=extra, corr=corr, bal=bal)

        no += 1

@typeguard.typechecked
def get_investment_schedule(
    initial: decimal.Decimal,
    rate: decimal.Decimal,
    term: int, *,
    contribution: decimal.Decimal = _0,
    extras: t.Sequence[Extra] = (),
    timing: _TIMING = 'start',
    iof: bool = False,
    iof_factor: decimal.Decimal = _IOF_FACTOR,
    start_date: t.Optional[datetime.date] = None
) -> t.Generator[Accrual, None, None]:
    '''
    Generates the schedule of an investment.

    Starting from the "initial" contribution, the balance grows for exactly "term" months at the effective monthly
    "rate". Every month, "contribution" and the one-off "extras" of the month enter the balance, before interest when
    "timing" is "start", or after it when "timing" is "end".

    When "iof" is true, the interest of the first month is reduced by "iof_factor". The amount withheld is reported on
    the "iof" field of the first row.
    '''

    initial, rate, contribution, iof_factor = _num(initial), _num(rate), _num(contribution), _num(iof_factor)

    if term <= 0:
        raise ValueError('"term" must be a greater than, or equal to, one')

    if initial < _0:
        raise ValueError('"initial" must be greater than, or equal to, zero')

    if not _0 <= iof_factor <= _1:
        raise ValueError(f'"iof_factor", {iof_factor}, must be between zero and one')

    plan = _plan_extras(extras, term, start_date)
    contribution = _Q(contribution)
    bal = _Q(initial)

    for no in range(1, term + 1):
        extra = plan.get(no, _0)
        penalty = _0

        if timing == 'start':
            bal = bal + contribution + extra

        gain = _Q(bal * rate)

        if iof and no == 1 and gain > _0:
            penalty = _Q(gain * iof_factor)
            gain = gain - penalty

        bal = bal + gain

        if timing == 'end':
            bal = bal + contribution + extra

        yield Accrual(no=no, date=_due_date(start_date, no), contrib=contribution, extra=extra, gain=gain, iof=penalty, bal=bal)
# }}}

# Public API. Taxes. {{{
@typeguard.typechecked
def calculate_revenue_tax_rate(days: int) -> decimal.Decimal:
    '''
    Returns the income tax rate for fixed income, given the days the investment was held.

    >>> calculate_revenue_tax_rate(180)
    Decimal('0.225')
    >>> calculate_revenue_tax_rate(181)
    Decimal('0.2')
    >>> calculate_revenue_tax_rate(721)
    Decimal('0.15')
    '''

    for minimum, maximum, rate in _BRAZIL_TAX_BRACKETS:
        if minimum < days <= maximum:
            return rate

    raise ValueError(f'elapsed days, {days}, should be greater than zero')

@typeguard.typechecked
def calculate_revenue_tax(begin: datetime.date, end: datetime.date) -> decimal.Decimal:
    '''Calculates tax for fixed income.'''

    if end > begin:
        return calculate_revenue_tax_rate((end - begin).days)

    raise ValueError(f'end date, {end}, should be greater than the begin date, {begin}')

@typeguard.typechecked
def calculate_withholding(product: _PRODUCT, gross_yield: decimal.Decimal, days: int) -> decimal.Decimal:
    '''
    Calculates the income tax withheld at redemption.

    Tax exempt products withhold nothing. Otherwise, the regressive rate for DAYS applies over the gross yield. A
    negative yield is not taxed.

    >>> calculate_withholding('LCI', decimal.Decimal(1000), 30)
    Decimal('0')
    >>> calculate_withholding('CDB', decimal.Decimal(1000), 30)
    Decimal('225.00')
    '''

    if product in _TAX_EXEMPT:
        return _0

    return _Q(max(_num(gross_yield), _0) * calculate_revenue_tax_rate(days))

@typeguard.typechecked
def calculate_iof_rate(days: int) -> decimal.Decimal:
    '''
    Returns the IOF rate over the yield of a redemption after DAYS days.

    >>> calculate_iof_rate(1)
    Decimal('0.96')
    >>> calculate_iof_rate(15)
    Decimal('0.5')
    >>> calculate_iof_rate(45)
    Decimal('0')
    '''

    if days < 1:
        raise ValueError(f'elapsed days, {days}, should be greater than zero')

    if days >= len(_IOF_TABLE):
        return _0

    return _IOF_TABLE[days - 1]
# }}}

# Public API. Aggregation. {{{
@typeguard.typechecked
def summarize(rows: t.Sequence[PeriodRow], *, initial: decimal.Decimal = _0, tax: decimal.Decimal = _0) -> Summary:
    '''
    Totals a schedule.

    For investments, "initial" is the initial contribution, and "tax" the income tax withheld at redemption.
    '''

    regs = types.SimpleNamespace(paid=_Q(_num(initial)), gain=_0, fees=_0, extra=_0, corr=_0, iof=_0)

    for row in rows:
        regs.gain += row.gain
        regs.extra += row.extra

        if isinstance(row, Installment):
            regs.paid += row.raw + row.extra
            regs.fees += row.fee
            regs.corr += row.corr

        elif isinstance(row, Accrual):
            regs.paid += row.contrib + row.extra
            regs.iof += row.iof

    first = rows[0].raw if rows and isinstance(rows[0], Installment) else _0
    gross = rows[-1].bal if rows else _Q(_num(initial))

    return Summary(
        periods=len(rows),
        total_paid=_Q(regs.paid),
        total_interest=_Q(regs.gain),
        total_fees=_Q(regs.fees),
        total_extra=_Q(regs.extra),
        total_correction=_Q(regs.corr),
        total_iof=_Q(regs.iof),
        first_payment=first,
        gross_balance=_Q(gross),
        tax=_Q(_num(tax)),
        net_balance=_Q(gross - _num(tax))
    )

@typeguard.typechecked
def bucketize(rows: t.Sequence[PeriodRow]) -> t.Dict[t.Union[int, str], Bucket]:
    '''
    Groups a schedule by calendar year.

    Rows without a date fall in a single "no-date" bucket.
    '''

    out: t.Dict[t.Union[int, str], Bucket] = {}

    for row in rows:
        key = row.date.year if row.date else _NO_DATE
        bkt = out.setdefault(key, Bucket(key=key))

        bkt.gain += row.gain

        if isinstance(row, Installment):
            bkt.amort += row.amort + row.extra

        elif isinstance(row, Accrual):
            bkt.amort += row.contrib + row.extra

    return out
# }}}

# Public API. Simulation. {{{
@typeguard.typechecked
def simulate(params: SimulationParameters) -> Simulation:
    '''
    Runs a simulation.

    Converts the nominal rate, generates the schedule of a loan or an investment, withholds income tax from the
    investment's yield, and summarizes the result.

    The correction lookup, if any, must be resolved beforehand. See "get_index_lookup".

    Raises ValueError on structurally invalid parameters, like a term lower than one or a negative principal.
    '''

    rate = calculate_monthly_rate(params.rate)
    rows: t.List[PeriodRow] = []

    _LOG.debug(f'simulating a {params.kind} of {params.principal} over {params.term} months at {rate} a month')

    if params.kind == 'LOAN':
        kwa: t.Dict[str, t.Any] = {}

        kwa['method'] = params.method
        kwa['extras'] = params.extras
        kwa['periodic_extra'] = params.contribution
        kwa['fee'] = params.fee
        kwa['start_date'] = params.start_date
        kwa['index'] = params.index

        rows.extend(get_loan_schedule(params.principal, rate, params.term, **kwa))

        summary = summarize(rows)

    else:
        kwa = {}

        kwa['contribution'] = params.contribution
        kwa['extras'] = params.extras
        kwa['timing'] = params.timing
        kwa['iof'] = params.iof
        kwa['iof_factor'] = params.iof_factor
        kwa['start_date'] = params.start_date

        rows.extend(get_investment_schedule(params.principal, rate, params.term, **kwa))

        days = _elapsed_days(params.term, params.start_date, params.day_count)
        tax = calculate_withholding(params.product, sum((x.gain for x in rows), _0), days)

        summary = summarize(rows, initial=params.principal, tax=tax)

    return Simulation(rows=rows, summary=summary, buckets=bucketize(rows))
# }}}

# vi:fdm=marker:
