#!/usr/bin/env python3
#
# Copyright (C) Inco - All Rights Reserved.
#
# Unauthorized copying of this file, via any medium, is strictly prohibited. Proprietary and confidential.
#

'''Finsim CLI.'''

# Python.
import re
import abc
import csv
import sys
import json
import locale
import typing
import decimal
import logging
import datetime
import textwrap
import zoneinfo
import functools
import contextlib
import dataclasses
import html.parser
import unicodedata
import urllib.parse

# Libs.
import sh2py
import tabulate

if typing.TYPE_CHECKING:
    import platformdirs

# Finsim.
import finsim

# Print helper.
_PR = functools.partial(print, file=sys.stderr, flush=True)

# Options for a loan schedule.
_LOAN_LIST_OPTS = {
    'headers': ['Nº', 'Date', 'Installment', 'Amort.', 'Interest', 'Fee', 'Extra', 'Corr.', 'Balance'],
    'colalign': ('right', 'center', 'right', 'right', 'right', 'right', 'right', 'right', 'right')
}

# Options for an investment schedule.
_INVESTMENT_LIST_OPTS = {
    'headers': ['Nº', 'Date', 'Contrib.', 'Extra', 'Return', 'IOF', 'Balance'],
    'colalign': ('right', 'center', 'right', 'right', 'right', 'right', 'right')
}

# Options for the yearly buckets.
_BUCKET_LIST_OPTS = {
    'headers': ['Year', 'Interest', 'Principal'],
    'colalign': ('center', 'right', 'right')
}

# Slugy cleanup regular expression.
_RE_SLUGY1 = re.compile(r'[^\w\s_-]')

# Slugy regular expression for separator substitution.
_RE_SLUGY2 = re.compile(r'[\s_-]+')

# Characters that are not part of a number.
_RE_NOT_NUMBER = re.compile(r'[^\d,.-]')

# Affirmative answers for flag parameters.
_YES = ['s', 'sim', 'y', 'yes']

# A logger for this module.
_LOG = logging.getLogger('finsim_cli')

# Simpler split result.
_SSR = functools.partial(urllib.parse.SplitResult, 'https', query='', fragment='')

# BACEN API URL.
_BACEN_API = functools.partial(_SSR, 'api.bcb.gov.br')

# BACEN SGS series codes.
_SGS_TR = 226
_SGS_IPCA = 433

# Today in Brazilian Regional Time (BRT).
_TODAY: typing.Callable[[], datetime.date] = lambda: datetime.datetime.now(zoneinfo.ZoneInfo('America/Sao_Paulo')).date()

def _slugy(value: str, connector: str = '') -> str:
    '''Create a "slugyfied" version of a string.'''

    value = unicodedata.normalize('NFKD', value)
    value = value.encode('ASCII', 'ignore').decode()
    value = _RE_SLUGY1.sub('', value).strip().lower()

    if connector:
        return _RE_SLUGY2.sub(connector, value)

    else:
        return value

def _money(value: decimal.Decimal) -> str:
    return locale.format_string('%.2f', value, grouping=True)

def _decimal(value: str) -> decimal.Decimal:
    '''
    Parses a number typed in either the Brazilian or the international notation.

    >>> _decimal('R$ 10.000,50')
    Decimal('10000.50')
    >>> _decimal('12.5')
    Decimal('12.5')
    '''

    text = _RE_NOT_NUMBER.sub('', value)

    if ',' in text:
        text = text.replace('.', '').replace(',', '.')

    try:
        return decimal.Decimal(text)

    except decimal.InvalidOperation:
        raise ValueError(f'invalid number: “{value}”')

def _extras(value: str) -> typing.Tuple[finsim.Extra, ...]:
    '''
    Parses a list of extraordinary payments, "DATE+VALUE" or "PERIOD+VALUE", separated by semicolons.

    >>> _extras('2024-06-10+5000;3+1.500,00')
    (Extra(value=Decimal('5000'), date=datetime.date(2024, 6, 10), no=None), Extra(value=Decimal('1500.00'), date=None, no=3))
    '''

    out = []

    for x in filter(None, value.split(';')):
        when, _, amount = x.partition('+')

        if not amount:
            raise ValueError(f'invalid extra: “{x}”, should be DATE+VALUE or PERIOD+VALUE')

        elif when.isdigit():
            out.append(finsim.Extra(value=_decimal(amount), no=int(when)))

        else:
            out.append(finsim.Extra(value=_decimal(amount), date=datetime.date.fromisoformat(when)))

    return tuple(out)

# From http://stackoverflow.com/a/55825140 and http://stackoverflow.com/a/64051246.
class _HtmlFilter(html.parser.HTMLParser, abc.ABC):
    '''A simple no deps HTML -> TEXT converter, for BACEN error pages.'''

    def __init__(self):
        super().__init__()

        self._in_head = self._in_style = False
        self.collected_text = []

    def handle_starttag(self, tag: str, _: list[tuple[str, str | None]]) -> None:
        if tag == 'head':
            self._in_head = True

        elif tag == 'style':
            self._in_style = True

    def handle_data(self, data: str) -> None:
        if self._in_head or self._in_style:
            return

        elif text := data.strip():
            self.collected_text.append(' '.join(text.split()))

    def handle_endtag(self, tag):
        if tag == 'head':
            self._in_head = False

        elif tag == 'style':
            self._in_style = False

class BacenBackend(finsim.IndexStorageBackend):
    '''
    A BACEN index retrieval backend, using the "platformdirs" Python package for persistence.

    On a given day, a single HTTP request per series is sent to BACEN. The response is stored on disk, and used on
    subsequent calls. Any failure, including a corrupt cache file or a malformed response, is reported as a
    "finsim.BackendError", so the simulation can proceed without correction.
    '''

    def __init__(self, app_name: str = 'finsim', author_name: str = 'Inco') -> None:
        import platformdirs

        self._platform = platformdirs.PlatformDirs(app_name, author_name)

    @staticmethod
    def _retrieve_bacen_response(url: str, query_string: typing.Dict[str, str], platform: 'platformdirs.api.PlatformDirsABC', index_name: str) -> typing.Any:
        '''
        Retrieves the data from a BACEN API response for a given series.

          1. Search for today's response on disk. If found, return it.

          2. Otherwise, query the BACEN API. Save a valid response to disk and return it. Raise on an invalid one.
        '''

        import requests

        name = f'{platform.user_cache_dir}/bacen_{_slugy(index_name)}_{_TODAY().strftime("%Y%m%d")}.json'

        try:
            _LOG.info(f'Searching for a cache file named “{name}”…')

            with open(name, 'r') as f:
                docs = json.loads(f.read())

                _LOG.info(f'Cache file “{name}” was found.')

            return docs

        except FileNotFoundError:
            _LOG.info(f'Cache file “{name}” was not found! Will query the BACEN API and dump the response to it…')

        except ValueError as exc:
            raise finsim.BackendError(f'cache file “{name}” is corrupt: {exc}') from exc

        try:
            rep = requests.get(url, params=query_string, timeout=10)

        except requests.RequestException as exc:
            raise finsim.BackendError(f'BACEN could not be reached: {exc}') from exc

        if rep.ok and 'content-type' in rep.headers and 'json' in rep.headers['content-type']:
            try:
                docs = rep.json()

            except ValueError as exc:
                raise finsim.BackendError(f'BACEN responded with an invalid JSON object: {exc}') from exc

            if docs:
                try:
                    with open(name, 'w') as f:
                        f.write(json.dumps(docs))

                        _LOG.info(f'Cache file “{name}” written to disk.')

                except FileNotFoundError:
                    _LOG.warning(f'Cache file “{name}” could not be written to disk.')

                return docs

            return []

        elif rep.ok:  # Assuming BACEN returned 2XX with some HTML content.
            parser = _HtmlFilter()

            parser.feed(rep.text)
            parser.close()

            raise finsim.BackendError(f'BACEN did not respond with a JSON object:\n\n{" ".join(parser.collected_text)}')

        else:
            raise finsim.BackendError(f'BACEN responded with HTTP status {rep.status_code}')

    def _get_monthly_indexes(self, code: int, name: str, begin: datetime.date, end: datetime.date) -> typing.Generator[finsim.MonthlyIndex, None, None]:
        '''
        Queries a BACEN series and reduces it to one index per month, the one published for the first day.
        '''

        qry = {'formato': 'json', 'dataInicial': begin.strftime('%d/%m/%Y'), 'dataFinal': end.strftime('%d/%m/%Y')}
        url = _BACEN_API(f'/dados/serie/bcdata.sgs.{code}/dados').geturl()
        mem: typing.Dict[datetime.date, finsim.MonthlyIndex] = {}

        for x in self._retrieve_bacen_response(url, qry, self._platform, name):
            if 'valor' not in x or not str(x['valor']).strip():
                _LOG.warning(f'Invalid response for the BACEN {name} API request, “{x}”.')

                continue

            try:
                day = datetime.datetime.strptime(x['data'], '%d/%m/%Y').date()
                val = decimal.Decimal(str(x['valor']).replace(',', '.'))

            except (KeyError, TypeError, ValueError, decimal.InvalidOperation) as exc:
                raise finsim.BackendError(f'malformed entry in the BACEN {name} API response, “{x}”') from exc

            key = day.replace(day=1)

            if key not in mem or day.day == 1:
                mem[key] = finsim.MonthlyIndex(date=key, value=val)

        if not mem:
            raise finsim.BackendError(f'the BACEN backend was unable to retrieve any {name} indexes')

        yield from (mem[k] for k in sorted(mem) if begin <= k <= end)

    def get_tr_indexes(self, begin: datetime.date, end: datetime.date) -> typing.Generator[finsim.MonthlyIndex, None, None]:
        yield from self._get_monthly_indexes(_SGS_TR, 'TR', begin, end)

    def get_ipca_indexes(self, begin: datetime.date, end: datetime.date) -> typing.Generator[finsim.MonthlyIndex, None, None]:
        yield from self._get_monthly_indexes(_SGS_IPCA, 'IPCA', begin, end)

def _print_simulation(sim: finsim.Simulation, fmt: str) -> typing.Any:
    if fmt in tabulate.tabulate_formats:
        data = []

        tabulate.PRESERVE_WHITESPACE = True  # Force Tabulate to preserve spaces (http://github.com/astanin/python-tabulate#text-formatting).

        for x in sim.rows:
            out: typing.List[typing.Any] = [x.no, x.date.strftime('%x') if x.date else '—']

            if isinstance(x, finsim.Installment):
                out.extend(_money(v) for v in (x.raw, x.amort, x.gain, x.fee, x.extra, x.corr, x.bal))

            elif isinstance(x, finsim.Accrual):
                out.extend(_money(v) for v in (x.contrib, x.extra, x.gain, x.iof, x.bal))

            data.append(out)

        _PR()

        if sim.rows and isinstance(sim.rows[0], finsim.Installment):
            _PR(tabulate.tabulate(data, tablefmt=fmt, **_LOAN_LIST_OPTS))

        else:
            _PR(tabulate.tabulate(data, tablefmt=fmt, **_INVESTMENT_LIST_OPTS))

        _PR()
        _PR(tabulate.tabulate([[k, _money(b.gain), _money(b.amort)] for k, b in sim.buckets.items()], tablefmt=fmt, **_BUCKET_LIST_OPTS))
        _PR()

        for key, val in dataclasses.asdict(sim.summary).items():
            _PR(f'{key.replace("_", " ").capitalize():.<20}: {val if isinstance(val, int) else _money(val)}')

        _PR()

    elif fmt == 'json':
        data = {'rows': [], 'summary': {}}

        for x in sim.rows:
            dic = dataclasses.asdict(x)

            dic['date'] = x.date.isoformat() if x.date else None

            data['rows'].append({k: str(v) if isinstance(v, decimal.Decimal) else v for k, v in dic.items()})

        data['summary'] = {k: str(v) if isinstance(v, decimal.Decimal) else v for k, v in dataclasses.asdict(sim.summary).items()}

        print(json.dumps(data))

    elif fmt == 'csv':
        if sim.rows:
            dev = csv.DictWriter(sys.stdout, list(dataclasses.asdict(sim.rows[0])))

            dev.writeheader()

            for x in sim.rows:
                dev.writerow(dataclasses.asdict(x))

    else:
        _PR(f'Error, format "{fmt}" not supported.')

        return sh2py.HALT

def _run(params: typing.Dict[str, typing.Any], fmt: str) -> typing.Any:
    try:
        sim = finsim.simulate(finsim.SimulationParameters(**params))

    except ValueError as exc:
        _PR(f'Error, {exc}.')

        return sh2py.HALT

    return _print_simulation(sim, fmt)

def ajuda(command=''):
    '''
    Supported commands:

    - "financiamento", generates a loan schedule;
    - "investimento", generates an investment schedule.
    '''

    dic = globals()

    if command and command in dic and dic[command].__doc__ and command != 'ajuda':
        _PR(textwrap.dedent(dic[command].__doc__))

    else:
        _PR(textwrap.dedent(str(ajuda.__doc__)))

    return sh2py.HALT

def financiamento(principal, taxa, prazo, inicio='', **kwargs):
    r'''
    Generates a loan schedule.

      • "principal", the loan amount;

      • "taxa", the fixed rate, in percent, annual unless "mensal=sim";

      • "prazo", the term, in months;

      • "inicio", optional, the ISO 8601 date of the first installment.

    Optional parameters:

      • "sistema", the amortization system, Price (default) or SAC;

      • "mensal", "sim" if the rate is monthly;

      • "extra_mensal", an extra amortization paid every month;

      • "seguro", a flat fee added to every installment;

      • "correcao", the balance correction index, TR or IPCA. Requires "inicio";

      • "antecipacoes", extra amortizations, a list of DATE+VALUE or PERIOD+VALUE separated by semicolons. Example

          finsim financiamento 300000 9,5 360 2024-02-10 sistema=SAC correcao=TR antecipacoes='12+20000;2026-02-10+15000'

      • "formato", the output format. Besides the formats supported by the Python Tabulate library, see
        "http://github.com/astanin/python-tabulate#table-format", this routine supports "json" and "csv".
    '''

    if kwargs.get('debug', '').lower() in _YES:
        logging.basicConfig(level=logging.DEBUG)

    # 0. Validate.
    if kwargs.get('sistema', 'Price').upper() not in typing.get_args(finsim._METHOD):
        _PR(f'Error: amortization system "{kwargs["sistema"]}" not supported.')

        return sh2py.HALT

    if kwargs.get('correcao', 'TR') not in typing.get_args(finsim._CORRECTION_INDEX):
        _PR(f'Error: correction index "{kwargs["correcao"]}" not supported.')

        return sh2py.HALT

    # 1. Resolve the correction lookup.
    start = datetime.date.fromisoformat(inicio) if inicio else None
    index = None

    if kwargs.get('correcao') and start:
        index = finsim.get_index_lookup(BacenBackend(), kwargs['correcao'], start, int(prazo))

    elif kwargs.get('correcao'):
        _LOG.warning('balance correction requires a start date, "inicio"')

    # 2. Assemble the Finsim call.
    kwa: typing.Dict[str, typing.Any] = {}

    kwa['kind'] = 'LOAN'
    kwa['principal'] = _decimal(principal)
    kwa['rate'] = finsim.Rate('PRE', _decimal(taxa), 'monthly' if kwargs.get('mensal', 'não').lower() in _YES else 'annual')
    kwa['term'] = int(prazo)
    kwa['start_date'] = start
    kwa['method'] = kwargs.get('sistema', 'Price').upper()
    kwa['contribution'] = _decimal(kwargs.get('extra_mensal', '0'))
    kwa['fee'] = _decimal(kwargs.get('seguro', '0'))
    kwa['extras'] = _extras(kwargs.get('antecipacoes', ''))
    kwa['index'] = index

    # 3. Run and print.
    return _run(kwa, kwargs.get('formato', 'fancy_outline'))

def investimento(aporte_inicial, taxa, prazo, inicio='', **kwargs):
    r'''
    Generates an investment schedule.

      • "aporte_inicial", the initial contribution;

      • "taxa", depends on "regime". For "pre", the fixed rate, in percent, annual unless "mensal=sim". For "cdi", the
        percentage of the CDI. For "ipca", the real spread over the IPCA, in percent a year;

      • "prazo", the term, in months;

      • "inicio", optional, the ISO 8601 date of the first month.

    Optional parameters:

      • "regime", the rate regime, pre (default), cdi or ipca;

      • "mensal", "sim" if the fixed rate is monthly;

      • "cdi", the annual CDI rate, in percent, for the cdi regime;

      • "ipca", the annual IPCA rate, in percent, for the ipca regime;

      • "aporte_mensal", the monthly contribution;

      • "aportes", one-off contributions, a list of DATE+VALUE or PERIOD+VALUE separated by semicolons;

      • "momento", when contributions enter the balance, start (default) or end;

      • "produto", the product, CDB by default. LCI, LCA, CRI, CRA, Poupança and Debênture Incentivada are tax exempt;

      • "iof", "sim" to apply the IOF friction on the first month, "fator_iof" being its factor, 0.30 by default;

      • "contagem", the day count of the income tax bracket, 30/360 (default) or actual;

      • "formato", the output format, as in "financiamento". Example

          finsim investimento 10000 110 24 2024-01-02 regime=cdi cdi=10,65 aporte_mensal=500 produto=LCI
    '''

    if kwargs.get('debug', '').lower() in _YES:
        logging.basicConfig(level=logging.DEBUG)

    # 0. Validate.
    regime = kwargs.get('regime', 'pre').lower()

    if regime not in ['pre', 'cdi', 'ipca']:
        _PR(f'Error: rate regime "{regime}" not supported.')

        return sh2py.HALT

    for key, lit in [('produto', finsim._PRODUCT), ('momento', finsim._TIMING), ('contagem', finsim._DAY_COUNT)]:
        if key in kwargs and kwargs[key] not in typing.get_args(lit):
            _PR(f'Error: {key} "{kwargs[key]}" not supported.')

            return sh2py.HALT

    # 1. Assemble the Finsim call.
    kwa: typing.Dict[str, typing.Any] = {}

    kwa['kind'] = 'INVESTMENT'
    kwa['principal'] = _decimal(aporte_inicial)
    kwa['term'] = int(prazo)
    kwa['start_date'] = datetime.date.fromisoformat(inicio) if inicio else None
    kwa['contribution'] = _decimal(kwargs.get('aporte_mensal', '0'))
    kwa['extras'] = _extras(kwargs.get('aportes', ''))
    kwa['product'] = kwargs.get('produto', 'CDB')
    kwa['iof'] = kwargs.get('iof', 'não').lower() in _YES
    kwa['iof_factor'] = _decimal(kwargs['fator_iof']) if 'fator_iof' in kwargs else finsim._IOF_FACTOR
    kwa['timing'] = kwargs.get('momento', 'start')
    kwa['day_count'] = kwargs.get('contagem', '30/360')

    if regime == 'cdi':
        kwa['rate'] = finsim.Rate('CDI', cdi_percentage=_decimal(taxa), cdi_rate=_decimal(kwargs.get('cdi', '0')))

    elif regime == 'ipca':
        kwa['rate'] = finsim.Rate('IPCA', ipca_rate=_decimal(kwargs.get('ipca', '0')), spread=_decimal(taxa))

    else:
        kwa['rate'] = finsim.Rate('PRE', _decimal(taxa), 'monthly' if kwargs.get('mensal', 'não').lower() in _YES else 'annual')

    # 2. Run and print.
    return _run(kwa, kwargs.get('formato', 'fancy_outline'))

if __name__ == '__main__':
    cli = sh2py.CommandLineMapper()

    cli.add(ajuda)
    cli.add(financiamento)
    cli.add(investimento)

    with contextlib.suppress(locale.Error):
        locale.setlocale(locale.LC_ALL, 'pt_BR.UTF-8')

    if cli.run() is sh2py.HALT:
        sys.exit(1)

# vi:fdm=marker:
