#!/usr/bin/env python3
#
# Copyright (C) Inco - All Rights Reserved.
#

'''Antecipa CLI.'''

# Python.
import csv
import sys
import json
import locale
import typing
import decimal
import logging
import datetime
import textwrap
import functools
import fileinput

# Libs.
import sh2py
import tabulate

# Antecipa.
import antecipa

# Logger object.
_LOG = logging.getLogger('antecipa.cli')

# Print helper.
_PR = functools.partial(print, file=sys.stderr, flush=True)

# Affirmative answers to yes/no arguments.
_YES = ['s', 'sim', 'y', 'yes']

# Options for the priced receivables table.
_OFFER_OPTS = {
    'headers': ['Nº', 'Due Date', 'Days', 'Rate', 'Amount', 'Discount', 'Fee', 'Net'],
    'colalign': ('right', 'center', 'right', 'right', 'right', 'right', 'right', 'right')
}

# Options for the index updates table.
_INDEX_OPTS = {
    'headers': ['Month', 'Adjustment %', 'Factor'],
    'colalign': ('center', 'right', 'right')
}

def _debug(kwargs):
    if kwargs.get('debug', '').lower() in _YES:
        logging.basicConfig(level=logging.DEBUG)

def _read_csv(path):
    lst = [path] if path else []

    if not lst:
        _PR('Input file not specified. Reading data from standard input…')

    with fileinput.input(lst, openhook=lambda f, _: open(f, newline='')) as file:
        yield from (x for x in csv.reader(file) if x and not x[0].startswith('#'))

def ajuda(command=''):
    '''
    Supported commands:

    - "precifica_antecipacao", prices an anticipation offer for a set of receivables;
    - "calcula_correcao", compounds monthly index updates and corrects a face value;
    - "situacao_credito", shows the active credit line of a company;
    - "altera_status_antecipacao", moves an anticipation request to a new status;
    - "aplica_evento_bancario", applies a bank event to an issued boleto.
    '''

    dic = globals()

    if command and command in dic and dic[command].__doc__ and command != 'ajuda':
        _PR(textwrap.dedent(dic[command].__doc__))

    else:
        _PR(textwrap.dedent(str(ajuda.__doc__)))

    return sh2py.HALT

def precifica_antecipacao(taxa_180, taxa_360, taxa_720, taxa_longo_prazo, csv_recebiveis='', **kwargs):
    r'''
    Prices an anticipation offer.

      antecipa precifica_antecipacao TAXA_180 TAXA_360 TAXA_720 TAXA_LONGO_PRAZO [csv_recebiveis=FILE] [options]

    Rates are monthly percentages, i.e. 2 means 2% a month. Receivables come from a CSV file, or from standard input,
    one per line: amount, due date in ISO 8601, and optionally an identifier. Example.

      antecipa precifica_antecipacao 2 2.5 3 3.5 csv_recebiveis=recebiveis.csv tarifa=10 data_base=2024-01-02

    Optional parameters:

      • "tarifa", flat fee per receivable;

      • "data_base", the evaluation date. Defaults to now;

      • "prazo_maximo", the maximum number of days to due of a receivable;

      • "formato", the output format. Besides the formats supported by the Python Tabulate library, see
        "http://github.com/astanin/python-tabulate#table-format", this routine supports the "json" format.
    '''

    _debug(kwargs)

    rec = []

    for i, line in enumerate(_read_csv(csv_recebiveis), 1):
        rid = int(line[2]) if len(line) > 2 and line[2] else i

        rec.append(antecipa.Receivable(0, decimal.Decimal(line[0]), datetime.date.fromisoformat(line[1].strip()), id=rid))

    try:
        rates = antecipa.RateTable(
            rate_180=decimal.Decimal(taxa_180),
            rate_360=decimal.Decimal(taxa_360),
            rate_720=decimal.Decimal(taxa_720),
            rate_long_term=decimal.Decimal(taxa_longo_prazo),
            fee_per_receivable=decimal.Decimal(kwargs.get('tarifa', '0')),
            operation_days_limit=int(kwargs['prazo_maximo']) if kwargs.get('prazo_maximo') else None
        )

        eval_date = datetime.date.fromisoformat(kwargs['data_base']) if kwargs.get('data_base') else None
        offer = antecipa.price_anticipation(rec, rates, eval_date)

    except antecipa.AntecipaError as exc:
        _PR(f'Error: {exc}.')

        return sh2py.HALT

    if (fmt := kwargs.get('formato', 'fancy_outline')) in tabulate.tabulate_formats:
        func = functools.partial(locale.currency, symbol=False, grouping=True)
        data = []

        tabulate.PRESERVE_WHITESPACE = True

        for x in offer.items:
            data.append([x.receivable_id, x.due_date.strftime('%x'), x.days_to_due, locale.str(x.rate), func(x.amount), func(antecipa._Q(x.discount)), func(x.fee), func(antecipa._Q(x.net))])

        _PR()
        _PR(tabulate.tabulate(data, tablefmt=fmt, **_OFFER_OPTS))
        _PR()
        _PR(f'Receivables........: {offer.quantidade}')
        _PR(f'Total value........: {func(offer.valor_total)}')
        _PR(f'Net value..........: {func(antecipa._Q(offer.valor_liquido))}')
        _PR()

    elif fmt == 'json':
        data = {
            'valor_total': str(offer.valor_total),
            'valor_liquido': str(antecipa._Q(offer.valor_liquido)),
            'quantidade': offer.quantidade,
            'items': [
                {
                    'id': x.receivable_id,
                    'due_date': x.due_date.isoformat(),
                    'days': x.days_to_due,
                    'rate': str(x.rate),
                    'amount': str(x.amount),
                    'discount': str(antecipa._Q(x.discount)),
                    'fee': str(x.fee),
                    'net': str(antecipa._Q(x.net))
                } for x in offer.items
            ]
        }

        print(json.dumps(data))

    else:
        _PR(f'Error, format "{fmt}" not supported.')

        return sh2py.HALT

def calcula_correcao(indice, data_inicio, data_fim, csv_indices='', valor_face='', incluir_inicio='n', debug='n'):
    '''
    Compounds monthly index updates over a range of months.

      antecipa calcula_correcao INDICE DATA_INICIO DATA_FIM [csv_indices=FILE] [valor_face=VALUE] [incluir_inicio=s/n]

    Index updates come from a CSV file, or from standard input, one per line: the reference month as an ISO 8601 date,
    and the monthly adjustment in percent. Example, correcting R$ 6.000,00 from January to March 2024.

      antecipa calcula_correcao IPCA 2024-01-15 2024-03-20 csv_indices=ipca.csv valor_face=6000

    By default the start month is the base of the correction, and is not compounded. Use "incluir_inicio=s" to
    compound it too. The "debug=s" argument shows the updates used, one by one.
    '''

    if debug.lower() in _YES:
        logging.basicConfig(level=logging.DEBUG)

    eng = antecipa.Engine(settings=antecipa.Settings(include_start_month=incluir_inicio.lower() in _YES))

    try:
        idx = eng.index.add_index(indice)

        for line in _read_csv(csv_indices):
            eng.index.add_update(idx.id, datetime.date.fromisoformat(line[0].strip()), decimal.Decimal(line[1]))

        adj = eng.index.compound_adjustment(idx.id, datetime.date.fromisoformat(data_inicio), datetime.date.fromisoformat(data_fim))

    except antecipa.AntecipaError as exc:
        _PR(f'Error: {exc}.')

        return sh2py.HALT

    fac = antecipa._1
    data = []

    for x in adj.months:
        fac = fac * (antecipa._1 + x.monthly_adjustment / antecipa._100)

        data.append([x.reference_month.strftime('%m/%Y'), locale.str(x.monthly_adjustment), locale.str(round(fac, 10))])

    _PR()
    _PR(tabulate.tabulate(data, tablefmt='fancy_outline', **_INDEX_OPTS))
    _PR()
    _PR(f'Index..............: {indice}')
    _PR(f'Months.............: {adj.start_month.strftime("%m/%Y")} to {adj.end_month.strftime("%m/%Y")}')
    _PR(f'Applied months.....: {adj.applied_months}')
    _PR(f'Factor.............: {locale.str(round(adj.factor, 10))}')
    _PR(f'Percentage.........: {locale.str(round(adj.percentage, 8))}%')

    if valor_face:
        _PR(f'Billed value.......: {locale.currency(antecipa.calculate_billed_value(decimal.Decimal(valor_face), adj.percentage), grouping=True)}')

    _PR()

def situacao_credito(banco, empresa):
    '''
    Shows the credit lines of a company, stored in an Antecipa SQLite database.

      antecipa situacao_credito BANCO EMPRESA
    '''

    bck = antecipa.SqliteBackend(banco)
    func = functools.partial(locale.currency, symbol=False, grouping=True)
    data = []

    for x in bck.get_credit_lines(int(empresa)):
        data.append([x.id, x.status, func(x.credit_limit), func(x.consumed_credit), func(x.available_credit), x.operation_days_limit or '–'])

    bck.close()

    if not data:
        _PR(f'Error: company #{empresa} has no credit lines.')

        return sh2py.HALT

    _PR(tabulate.tabulate(data, headers=['Line', 'Status', 'Limit', 'Consumed', 'Available', 'Days Limit'], tablefmt='fancy_outline'))

def altera_status_antecipacao(banco, antecipacao, status):
    '''
    Moves an anticipation request, stored in an Antecipa SQLite database, to a new status.

      antecipa altera_status_antecipacao BANCO ANTECIPACAO STATUS

    The status must be Approved, Rejected or Completed. Approval consumes credit from the company's active line, and
    fails when it can't be afforded.
    '''

    if status not in typing.get_args(antecipa._ANTICIPATION_STATUS):
        _PR(f'Error: status "{status}" not supported.')

        return sh2py.HALT

    eng = antecipa.Engine(antecipa.SqliteBackend(banco), antecipa.Settings.from_env())

    try:
        out = eng.anticipation.transition(int(antecipacao), status)

    except antecipa.AntecipaError as exc:
        _PR(f'Error: {exc}.')

        return sh2py.HALT

    finally:
        eng.backend.close()

    if not out.ok:
        _PR(f'Error: insufficient credit. Requested {locale.currency(out.error.requested, grouping=True)}, available {locale.currency(out.error.available, grouping=True)}.')

        return sh2py.HALT

    _PR(f'Anticipation #{out.anticipation.id} is now {out.anticipation.status}.')

def aplica_evento_bancario(banco, boleto, evento):
    '''
    Applies a bank event to an issued boleto, stored in an Antecipa SQLite database.

      antecipa aplica_evento_bancario BANCO BOLETO EVENTO

    The event must be registered, paid, credited or overdue.
    '''

    if evento not in typing.get_args(antecipa._BANK_EVENT):
        _PR(f'Error: event "{evento}" not supported.')

        return sh2py.HALT

    eng = antecipa.Engine(antecipa.SqliteBackend(banco), antecipa.Settings.from_env())

    try:
        bol = eng.boleto.apply_bank_event(int(boleto), evento)

    except antecipa.AntecipaError as exc:
        _PR(f'Error: {exc}.')

        return sh2py.HALT

    finally:
        eng.backend.close()

    _PR(f'Boleto #{bol.id} is {bol.emission_status}, {bol.payment_status}.')

cli = sh2py.CommandLineMapper()

cli.add(ajuda)
cli.add(precifica_antecipacao)
cli.add(calcula_correcao)
cli.add(situacao_credito)
cli.add(altera_status_antecipacao)
cli.add(aplica_evento_bancario)

try:
    locale.setlocale(locale.LC_ALL, 'pt_BR.UTF-8')

except locale.Error as exc:
    _LOG.warning(f'locale "pt_BR.UTF-8" unavailable, using the default one: {exc}')

if cli.run() is sh2py.HALT:
    exit(1)

# vi:fdm=marker:
