#!/usr/bin/env python3
#
# Copyright (C) Inco - All Rights Reserved.
#
# Unauthorized copying of this file, via any medium, is strictly prohibited. Proprietary and confidential.
#

'''Loancore CLI.'''

# Python.
import csv
import sys
import json
import decimal
import logging
import datetime
import textwrap
import functools
import fileinput
import dataclasses

# Libs.
import sh2py
import tabulate

# Loancore.
import loancore

# Print helper.
_PR = functools.partial(print, file=sys.stderr, flush=True)

# Options for the amortization schedule table.
_SCHEDULE_OPTS = {
    'headers': ['Nº', 'Date', 'Opening', 'Payment', 'Interest', 'Principal', 'Closing'],
    'colalign': ('right', 'center', 'right', 'right', 'right', 'right', 'right')
}

# Options for the accrual table.
_ACCRUAL_OPTS = {
    'headers': ['Nº', 'Start', 'End', 'Days', 'Opening', 'Interest', 'Closing', 'Closing BRL (contr.)', 'Closing BRL (PTAX)', 'PTAX', 'Source'],
    'colalign': ('right', 'center', 'center', 'right', 'right', 'right', 'right', 'right', 'right', 'right', 'center')
}

# A logger for this module.
_LOG = logging.getLogger('loancore_cli')

def _money(value: decimal.Decimal) -> str:
    return f'{value:,.2f}'

def _load(arquivo: str) -> dict:
    '''Reads a contract document, in JSON, from a file or from the standard input.'''

    with fileinput.input(files=[arquivo] if arquivo else ['-']) as inp:
        return json.loads(''.join(inp))

def _unpack(doc: dict) -> tuple:
    '''
    Splits a contract document into a contract, its ledger and an FX collaborator.

    Besides the contract fields, the document may carry:

      • "ledger", a list of ledger records;

      • "cotacoes", manual FX rates per currency, e.g. {"USD": {"2025-01-31": "5,20"}}.
    '''

    contract = loancore.contract_from_record(doc)
    ledger = [loancore.entry_from_record(x) for x in doc.get('ledger', [])]
    manual = {}

    for cur, dic in doc.get('cotacoes', {}).items():
        manual[cur.upper()] = {loancore._to_date(k): loancore._to_decimal(v) for k, v in dic.items()}

    return contract, ledger, loancore.InMemoryFxBackend(manual=manual)

def _emit(rows: list, data: list, opts: dict, fmt: str) -> object:
    if fmt in tabulate.tabulate_formats:
        _PR()
        _PR(tabulate.tabulate(data, tablefmt=fmt, **opts))
        _PR()

    elif fmt in ('json', 'raw'):
        print(json.dumps([{k: str(v) for k, v in dataclasses.asdict(x).items()} for x in rows]))

    elif fmt == 'csv' and rows:
        dev = csv.DictWriter(sys.stdout, [x.name for x in dataclasses.fields(rows[0])])

        dev.writeheader()

        for x in rows:
            dev.writerow(dataclasses.asdict(x))

    elif fmt != 'csv':
        _PR(f'Error, format "{fmt}" not supported.')

        return sh2py.HALT

    return None

def ajuda(command=''):
    '''
    Supported commands:

    - "gera_cronograma", generates the amortization schedule of a contract;
    - "gera_apropriacao", generates the interest accrual of a contract between two dates;
    - "saldo", prints the balance of a contract on a date.
    '''

    dic = globals()

    if command and command in dic and dic[command].__doc__ and command != 'ajuda':
        _PR(textwrap.dedent(dic[command].__doc__))

    else:
        _PR(textwrap.dedent(str(ajuda.__doc__)))

    return sh2py.HALT

def gera_cronograma(arquivo='', **kwargs):
    r'''
    Generates the amortization schedule of a contract with a SCHEDULED or BULLET payment flow.

      • "arquivo", the contract document, in JSON. Legacy spreadsheet records are accepted. If this file is not
        provided, standard input will be read.

      • "formato", the output format. Besides the formats supported by the Python Tabulate library, see
        "http://github.com/astanin/python-tabulate#table-format", this routine supports the "json" and "csv" formats.
        The "raw" format is a synonym for the "json" format.

      • "debug", optional, enables debug logging.
    '''

    if kwargs.get('debug', '').lower() in ['s', 'sim', 'y', 'yes']:
        logging.basicConfig(level=logging.DEBUG)

    try:
        contract, _, fx = _unpack(_load(arquivo))
        rows = loancore.build_schedule(contract, fx=fx)

    except (loancore.LoanError, ValueError) as exc:
        _PR(f'Error: {exc}.')

        return sh2py.HALT

    data = [[x.no, x.date.isoformat(), _money(x.opening), _money(x.payment), _money(x.interest), _money(x.principal), _money(x.closing)] for x in rows]

    return _emit(rows, data, _SCHEDULE_OPTS, kwargs.get('formato', 'fancy_outline'))

def gera_apropriacao(inicio, fim, arquivo='', frequencia='MONTHLY', **kwargs):
    r'''
    Generates the interest accrual of a contract between two dates.

      • "inicio" and "fim", ISO 8601 dates;

      • "frequencia", the accrual frequency: DAILY, MONTHLY or ANNUAL. Legacy names (Diário, Mensal, Anual) work too;

      • "arquivo", the contract document, in JSON, with its ledger. If this file is not provided, standard input will
        be read.

      • "modo_taxa", optional, BASE (annual curve rate) or DAILY (daily CDI factors);

      • "modo_cambio", optional, DAILY, MONTHLY or ANNUAL. The PTAX of the period end, of its month end, or of its year
        end;

      • "formato", the output format (see "gera_cronograma");

      • "debug", optional, enables debug logging.
    '''

    if kwargs.get('debug', '').lower() in ['s', 'sim', 'y', 'yes']:
        logging.basicConfig(level=logging.DEBUG)

    try:
        contract, ledger, fx = _unpack(_load(arquivo))
        kwa = {}

        kwa['frequency'] = loancore._enum(frequencia, loancore._FREQUENCY, 'frequencia')
        kwa['rate_mode'] = loancore._enum(kwargs.get('modo_taxa', 'BASE'), loancore._RATE_MODE, 'modo_taxa')
        kwa['fx_mode'] = loancore._enum(kwargs.get('modo_cambio', 'DAILY'), loancore._FX_MODE, 'modo_cambio')

        rows = loancore.build_accrual(contract, ledger, datetime.date.fromisoformat(inicio), datetime.date.fromisoformat(fim), fx=fx, **kwa)

    except (loancore.LoanError, ValueError) as exc:
        _PR(f'Error: {exc}.')

        return sh2py.HALT

    data = []

    for x in rows:
        out = []

        out.append(x.no)
        out.append(x.start.isoformat())
        out.append(x.end.isoformat())
        out.append(x.days)
        out.append(_money(x.opening))
        out.append(_money(x.interest))
        out.append(_money(x.closing))
        out.append(_money(x.closing_brl_contract))
        out.append(_money(x.closing_brl_ptax))
        out.append(f'{x.ptax_rate:.4f}')
        out.append(x.fx_source + (' (!)' if x.degraded else ''))

        data.append(out)

    return _emit(rows, data, _ACCRUAL_OPTS, kwargs.get('formato', 'fancy_outline'))

def saldo(data, arquivo='', **kwargs):
    r'''
    Prints the balance of a contract on a date, replaying its ledger.

      • "data", an ISO 8601 date;

      • "arquivo", the contract document, in JSON, with its ledger. If this file is not provided, standard input will
        be read.
    '''

    if kwargs.get('debug', '').lower() in ['s', 'sim', 'y', 'yes']:
        logging.basicConfig(level=logging.DEBUG)

    try:
        contract, ledger, fx = _unpack(_load(arquivo))
        snap = loancore.snapshot(contract, ledger, datetime.date.fromisoformat(data), fx=fx)

    except (loancore.LoanError, ValueError) as exc:
        _PR(f'Error: {exc}.')

        return sh2py.HALT

    rows = [
        ['Contract', contract.id],
        ['Status', snap.status],
        [f'Balance ({contract.currency})', _money(snap.balance_origin)],
        ['Balance (BRL)', _money(snap.balance_brl)],
        [f'Accrued interest ({contract.currency})', _money(snap.accrued_interest_origin)],
        ['Next payment', snap.next_payment_date.isoformat() if snap.next_payment_date else '-'],
        ['Next amount', _money(snap.next_payment_amount) if snap.next_payment_amount is not None else '-'],
    ]

    _PR()
    _PR(tabulate.tabulate(rows, tablefmt=kwargs.get('formato', 'fancy_outline')))
    _PR()

cli = sh2py.CommandLineMapper()

cli.add(ajuda)
cli.add(gera_cronograma)
cli.add(gera_apropriacao)
cli.add(saldo)

if cli.run() is sh2py.HALT:
    exit(1)

# vi:fdm=marker:
