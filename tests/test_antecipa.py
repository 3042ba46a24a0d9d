# Copyright (C) Inco - All Rights Reserved.
#
# Unauthorized copying of this file, via any medium, is strictly prohibited. Proprietary and confidential.
#

'''Antecipa test module.'''

# Core.
import types
import decimal
import logging
import datetime
import threading
import unittest.mock

# Libs.
import pytest
import typeguard

# Inco.
import antecipa

# Evaluation date of most offers below.
_EVAL = datetime.date(2024, 1, 2)

# Zero as decimal.
_0 = decimal.Decimal()

# One as decimal.
_1 = decimal.Decimal('1')

# Decimal shorthand.
_D = decimal.Decimal

# Distinct rates per tier, so a tier is recognizable by its rate.
_TIERS = antecipa.RateTable(_D('2'), _D('3'), _D('4'), _D('5'))

# Rates of the company used in the settlement scenarios.
_RATES = antecipa.RateTable(_D('2'), _D('2.5'), _D('3'), _D('3.5'), fee_per_receivable=_D('10'), operation_days_limit=720)

def _receivable(backend, amount, due_date, project_id=7, status='eligible_for_anticipation'):
    return backend.add_receivable(antecipa.Receivable(project_id, _D(amount), due_date, status=status))

def _scenario(backend, settings=None, cap='1000', indexed=False):
    '''
    Company 1, project 7, an approved anticipation of two receivables, and its plan with two installments.

      • "r1" and "r2", 10000 each, due in March and April, are the PMT sources of installments 1 and 2.

      • "b1", "b2" and "b3", 6000, 5000 and 7000, due in March, March and April, were anticipated by another request
        and are the billing candidates.
    '''

    eng = antecipa.Engine(backend, settings)
    kwa = {}

    eng.credit.create_line(1, _RATES, _D('1000000'))

    r1 = _receivable(backend, 10000, datetime.date(2024, 3, 10))
    r2 = _receivable(backend, 10000, datetime.date(2024, 4, 10))
    b1 = _receivable(backend, 6000, datetime.date(2024, 3, 5))
    b2 = _receivable(backend, 5000, datetime.date(2024, 3, 20))
    b3 = _receivable(backend, 7000, datetime.date(2024, 4, 15))

    ant = eng.anticipation.submit(1, 7, [r1.id, r2.id], _EVAL)
    oth = eng.anticipation.submit(1, 7, [b1.id, b2.id, b3.id], _EVAL)

    assert eng.anticipation.transition(ant.id, 'Approved').ok

    if indexed:
        idx = eng.index.add_index('IPCA', 'Índice Nacional de Preços ao Consumidor Amplo')

        eng.index.add_update(idx.id, datetime.date(2024, 1, 1), _D('2'))
        eng.index.add_update(idx.id, datetime.date(2024, 2, 1), _D('1'))
        eng.index.add_update(idx.id, datetime.date(2024, 3, 1), _D('0.5'))

        kwa['index_id'] = idx.id
        kwa['adjustment_base_date'] = datetime.date(2024, 1, 15)

    plan = eng.installment.create_plan(ant.id, 10, _D(cap), **kwa)
    i1 = eng.installment.add_installment(plan.id, 1, datetime.date(2024, 3, 10), _D('10000'), pmt_receivable_ids=[r1.id])
    i2 = eng.installment.add_installment(plan.id, 2, datetime.date(2024, 4, 10), _D('10000'), pmt_receivable_ids=[r2.id])

    return types.SimpleNamespace(engine=eng, ant=ant, oth=oth, plan=plan, i1=i1, i2=i2, r1=r1, r2=r2, b1=b1, b2=b2, b3=b3)

# 🚩 Parametrizações inválidas. {{{
def test_wont_price_without_receivables():
    '''Antecipa deve falhar ao precificar uma oferta sem recebíveis.'''

    with pytest.raises(antecipa.ValidationError, match='at least one receivable is required'):
        antecipa.price_anticipation([], _TIERS, _EVAL)

def test_wont_price_with_wrong_types():
    rec = antecipa.Receivable(7, _D('1000'), datetime.date(2024, 2, 1))

    with pytest.raises(typeguard.TypeCheckError, match=r'argument "rates" \(str\)'):
        antecipa.price_anticipation([rec], 'tabela', _EVAL)  # pyright: ignore

    with pytest.raises(typeguard.TypeCheckError, match=r'argument "rate" \(int\) is not an instance of decimal.Decimal'):
        antecipa.calculate_growth_factor(2, 30)  # pyright: ignore

    with pytest.raises(typeguard.TypeCheckError, match=r'argument "eval_date" \(str\)'):
        antecipa.price_anticipation([rec], _TIERS, '2024-01-02')  # pyright: ignore

def test_wont_create_bad_rate_tables():
    with pytest.raises(antecipa.ValidationError, match='rate tier "rate_360" is missing'):
        antecipa.RateTable(_D('2'), None, _D('4'), _D('5'))  # pyright: ignore

    with pytest.raises(antecipa.ValidationError, match='rate tier "rate_720" must not be negative, got -1'):
        antecipa.RateTable(_D('2'), _D('3'), _D('-1'), _D('5'))

    with pytest.raises(antecipa.ValidationError, match='"operation_days_limit" must not be negative, got -5'):
        antecipa.RateTable(operation_days_limit=-5)

def test_wont_price_past_due_receivables():
    '''Antecipa deve falhar ao precificar um recebível vencido.'''

    rec = antecipa.Receivable(7, _D('1000'), datetime.date(2024, 1, 1), id=3)

    with pytest.raises(antecipa.ValidationError, match='receivable #3 is past due, 2024-01-01 precedes 2024-01-02'):
        antecipa.price_anticipation([rec], _TIERS, _EVAL)

def test_wont_price_beyond_the_operation_limit():
    '''Antecipa deve recusar, sem truncar, recebíveis além do prazo máximo da operação.'''

    rates = antecipa.RateTable(_D('2'), _D('3'), _D('4'), _D('5'), operation_days_limit=100)
    ok = antecipa.Receivable(7, _D('1000'), _EVAL + datetime.timedelta(days=100), id=1)
    ko = antecipa.Receivable(7, _D('1000'), _EVAL + datetime.timedelta(days=101), id=2)

    assert antecipa.price_anticipation([ok], rates, _EVAL).quantidade == 1

    with pytest.raises(antecipa.ValidationError, match='receivable #2 is due in 101 days, beyond the operation limit of 100 days'):
        antecipa.price_anticipation([ok, ko], rates, _EVAL)

def test_wont_price_non_positive_amounts():
    rec = antecipa.Receivable(7, _0, datetime.date(2024, 2, 1), id=9)

    with pytest.raises(antecipa.ValidationError, match='receivable #9 must have a positive amount, got 0'):
        antecipa.price_anticipation([rec], _TIERS, _EVAL)
# }}}

# 💰 Precificação. {{{
@pytest.mark.smoke
def test_will_price_single_receivable():
    '''
    Um recebível de R$ 10.000,00 a 90 dias, taxa de 2% a.m., sem tarifa.

      discount = 10000 × (1.02 ^ 3 - 1) = 612.08
      net = 9387.92
    '''

    rates = antecipa.RateTable(rate_180=_D('2'))
    rec = antecipa.Receivable(7, _D('10000'), datetime.date(2024, 4, 1), id=1)
    off = antecipa.price_anticipation([rec], rates, _EVAL)
    itm = off.items[0]

    assert itm.days_to_due == 90
    assert itm.rate == _D('2')
    assert itm.growth_factor == _D('1.061208')
    assert itm.discount == _D('612.08')
    assert itm.net == _D('9387.92')
    assert off.valor_total == _D('10000')
    assert off.valor_liquido == _D('9387.92')
    assert off.quantidade == 1

def test_will_deduct_the_flat_fee():
    rates = antecipa.RateTable(rate_180=_D('2'), fee_per_receivable=_D('50'))
    rec = antecipa.Receivable(7, _D('10000'), datetime.date(2024, 4, 1))

    assert antecipa.price_anticipation([rec], rates, _EVAL).valor_liquido == _D('9337.92')

def test_will_apply_the_fee_per_receivable():
    rates = antecipa.RateTable(fee_per_receivable=_D('12.5'))
    lst = [antecipa.Receivable(7, _D('100'), datetime.date(2024, 3, 1)) for _ in range(4)]
    off = antecipa.price_anticipation(lst, rates, _EVAL)

    assert off.valor_total == _D('400')
    assert off.valor_liquido == _D('350')
    assert off.quantidade == 4

@pytest.mark.parametrize('days, rate', [
    (0, '2'),
    (1, '2'),
    (180, '2'),
    (181, '3'),
    (360, '3'),
    (361, '4'),
    (720, '4'),
    (721, '5'),
    (2000, '5')
])
def test_will_select_tier_by_days_to_due(days, rate):
    '''Os limites de cada faixa são inclusivos.'''

    rec = antecipa.Receivable(7, _D('1000'), _EVAL + datetime.timedelta(days=days))

    assert antecipa.price_anticipation([rec], _TIERS, _EVAL).items[0].rate == _D(rate)

def test_will_discount_more_the_farther_the_due_date():
    '''Dentro da mesma faixa, quanto mais distante o vencimento, menor o valor líquido.'''

    nets = []

    for days in [10, 30, 60, 120, 179, 180, 181, 400]:
        rec = antecipa.Receivable(7, _D('1000'), _EVAL + datetime.timedelta(days=days))

        nets.append(antecipa.price_anticipation([rec], _TIERS, _EVAL).valor_liquido)

    assert nets == sorted(nets, reverse=True)
    assert len(set(nets)) == len(nets)

def test_will_count_a_started_day_as_whole():
    rec = antecipa.Receivable(7, _D('1000'), datetime.date(2024, 4, 1))

    assert antecipa.price_anticipation([rec], _TIERS, datetime.datetime(2024, 1, 2, 9, 30)).items[0].days_to_due == 90
    assert antecipa.price_anticipation([rec], _TIERS, datetime.datetime(2024, 1, 1, 0, 0)).items[0].days_to_due == 91

def test_will_sum_the_offer():
    lst = [
        antecipa.Receivable(7, _D('10000'), datetime.date(2024, 4, 1), id=1),
        antecipa.Receivable(7, _D('5000'), datetime.date(2024, 12, 1), id=2)
    ]

    off = antecipa.price_anticipation(lst, _TIERS, _EVAL)

    assert off.valor_total == _D('15000')
    assert off.valor_liquido == sum((x.net for x in off.items), _0)
    assert [x.receivable_id for x in off.items] == [1, 2]
    assert off.items[1].rate == _D('3')

def test_will_not_compound_a_zero_rate():
    assert antecipa.calculate_growth_factor(_0, 720) == _1
# }}}

# 🏦 Linha de crédito. {{{
@pytest.mark.smoke
def test_will_consume_credit_up_to_the_limit(backend):
    '''
    Limite de R$ 50.000,00, consumido R$ 40.000,00.

    A primeira antecipação de R$ 10.000,00 é aprovada e esgota o limite; a segunda é recusada por falta de crédito.
    '''

    eng = antecipa.Engine(backend)

    eng.credit.create_line(1, _RATES, _D('50000'))
    eng.credit.consume(1, _D('40000'))

    ra = _receivable(backend, 10000, datetime.date(2024, 3, 1))
    rb = _receivable(backend, 10000, datetime.date(2024, 3, 2))
    aa = eng.anticipation.submit(1, 7, [ra.id], _EVAL)
    ab = eng.anticipation.submit(1, 7, [rb.id], _EVAL)

    out = eng.anticipation.transition(aa.id, 'Approved')

    assert out.ok
    assert out.anticipation.status == 'Approved'
    assert eng.credit.get_active_line(1).consumed_credit == _D('50000')

    out = eng.anticipation.transition(ab.id, 'Approved')

    assert not out.ok
    assert isinstance(out.error, antecipa.InsufficientCredit)
    assert out.error.available == _0
    assert out.error.requested == _D('10000')
    assert out.error.shortfall == _D('10000')
    assert eng.anticipation.get(ab.id).status == 'Requested'
    assert eng.credit.get_active_line(1).consumed_credit == _D('50000')

def test_will_report_capacity_without_raising(backend):
    eng = antecipa.Engine(backend)

    eng.credit.create_line(1, _RATES, _D('1000'))

    chk = eng.credit.check_capacity(1, _D('1000'))

    assert chk.ok and chk.error is None

    chk = eng.credit.check_capacity(1, _D('1000.01'))

    assert not chk.ok
    assert chk.error.available == _D('1000')
    assert chk.error.requested == _D('1000.01')

def test_wont_consume_more_than_available(backend):
    eng = antecipa.Engine(backend)

    eng.credit.create_line(1, _RATES, _D('100'))

    with pytest.raises(antecipa.InsufficientCredit, match='insufficient credit: requested 100.01, available 100'):
        eng.credit.consume(1, _D('100.01'))

    assert eng.credit.get_active_line(1).consumed_credit == _0

def test_wont_consume_odd_amounts(backend):
    eng = antecipa.Engine(backend)

    eng.credit.create_line(1, _RATES, _D('100'))

    with pytest.raises(antecipa.ValidationError, match='credit amounts must be positive, got 0'):
        eng.credit.consume(1, _0)

    with pytest.raises(antecipa.ValidationError, match='amount 0.001 is not a whole number of cents'):
        eng.credit.consume(1, _D('0.001'))

    with pytest.raises(antecipa.ValidationError, match='amount 10.005 is not a whole number of cents'):
        eng.credit.create_line(2, _RATES, _D('10.005'))

def test_wont_find_a_missing_line(backend):
    eng = antecipa.Engine(backend)

    with pytest.raises(antecipa.NotFoundError, match='company #1 has no active credit line'):
        eng.credit.check_capacity(1, _1)

    with pytest.raises(LookupError):
        eng.credit.consume(1, _1)

def test_will_keep_a_single_active_line(backend):
    '''Ativar uma linha desativa a anterior na mesma transação.'''

    eng = antecipa.Engine(backend)
    la = eng.credit.create_line(1, _RATES, _D('1000'))
    lb = eng.credit.create_line(1, _TIERS, _D('2000'))
    lc = eng.credit.create_line(2, _RATES, _D('3000'))

    assert backend.get_credit_line(la.id).status == 'Inactive'
    assert backend.get_credit_line(lb.id).status == 'Active'
    assert backend.get_credit_line(lc.id).status == 'Active'
    assert eng.credit.get_active_line(1).id == lb.id

    eng.credit.activate(1, la.id)

    assert [x.status for x in backend.get_credit_lines(1)] == ['Active', 'Inactive']

    with pytest.raises(antecipa.ConflictError, match='company #1 already has an active credit line'):
        backend.add_credit_line(antecipa.CreditLine(1, _RATES, _D('10'), status='Active'))

    with pytest.raises(antecipa.NotFoundError, match=f'credit line #{lc.id} not found for company #1'):
        eng.credit.activate(1, lc.id)

def test_will_release_credit_down_to_zero(backend, caplog):
    eng = antecipa.Engine(backend)
    lin = eng.credit.create_line(1, _RATES, _D('1000'))

    eng.credit.consume(1, _D('300'))

    assert eng.credit.release(1, _D('100')).consumed_credit == _D('200')
    assert eng.credit.release(1, _D('500')).consumed_credit == _0
    assert ('antecipa', logging.WARNING, f'releasing 500 from credit line #{lin.id}, which only has 200 consumed') in caplog.record_tuples

def test_will_edit_terms(backend, caplog):
    eng = antecipa.Engine(backend)
    lin = eng.credit.create_line(1, _RATES, _D('1000'))

    eng.credit.consume(1, _D('800'))

    lin = eng.credit.edit_terms(lin.id, credit_limit=_D('500'))

    assert lin.rates == _RATES
    assert lin.credit_limit == _D('500')
    assert lin.available_credit == _D('-300')
    assert ('antecipa', logging.WARNING, f'credit line #{lin.id} limit, 500, is below its consumed credit, 800') in caplog.record_tuples

    lin = eng.credit.edit_terms(lin.id, rates=_TIERS)

    assert lin.rates == _TIERS
    assert lin.status == 'Active'
    assert lin.consumed_credit == _D('800')
# }}}

# 🔁 Ciclo de vida. {{{
_STATUSES = ['Requested', 'Approved', 'Rejected', 'Completed']

@pytest.mark.parametrize('current', _STATUSES)
@pytest.mark.parametrize('target', _STATUSES)
def test_will_follow_the_state_machine(backend, current, target):
    '''Só são aceitas as transições Solicitada → Aprovada | Reprovada e Aprovada → Concluída | Reprovada.'''

    eng = antecipa.Engine(backend)

    eng.credit.create_line(1, _RATES, _D('100000'))

    rec = _receivable(backend, 1000, datetime.date(2024, 3, 1))
    ant = eng.anticipation.submit(1, 7, [rec.id], _EVAL)

    if current == 'Approved':
        assert eng.anticipation.transition(ant.id, 'Approved').ok

    elif current != 'Requested':
        assert backend.set_anticipation_status(ant.id, 'Requested', current)

    allowed = {('Requested', 'Approved'), ('Requested', 'Rejected'), ('Approved', 'Completed'), ('Approved', 'Rejected')}

    if (current, target) in allowed:
        out = eng.anticipation.transition(ant.id, target)

        assert out.ok
        assert out.anticipation.status == target

    else:
        with pytest.raises(antecipa.InvalidTransition, match=f'invalid anticipation status transition from {current} to {target}') as exc:
            eng.anticipation.transition(ant.id, target)

        assert exc.value.current == current
        assert exc.value.requested == target
        assert eng.anticipation.get(ant.id).status == current

def test_wont_transition_to_unknown_status():
    eng = antecipa.Engine()

    with pytest.raises(typeguard.TypeCheckError, match=r'argument "target" \(str\)'):
        eng.anticipation.transition(1, 'Paga')  # pyright: ignore

@pytest.mark.limitation
def test_wont_refund_credit_on_rejection(backend):
    '''Reprovar uma antecipação aprovada não devolve o crédito consumido.'''

    eng = antecipa.Engine(backend)

    eng.credit.create_line(1, _RATES, _D('100000'))

    rec = _receivable(backend, 1000, datetime.date(2024, 3, 1))
    ant = eng.anticipation.submit(1, 7, [rec.id], _EVAL)

    eng.anticipation.transition(ant.id, 'Approved')
    eng.anticipation.transition(ant.id, 'Rejected')

    assert eng.credit.get_active_line(1).consumed_credit == _D('1000')
    assert backend.get_receivable(rec.id).status == 'anticipated'

def test_will_submit_with_a_rate_snapshot(backend):
    eng = antecipa.Engine(backend)
    lin = eng.credit.create_line(1, _RATES, _D('100000'))
    ra = _receivable(backend, 10000, datetime.date(2024, 4, 1))
    rb = _receivable(backend, 5000, datetime.date(2024, 3, 1))
    ant = eng.anticipation.submit(1, 7, [ra.id, rb.id], _EVAL)

    eng.credit.edit_terms(lin.id, rates=_TIERS)

    ant = eng.anticipation.get(ant.id)

    assert ant.status == 'Requested'
    assert ant.rates == _RATES
    assert ant.receivable_ids == (ra.id, rb.id)
    assert ant.quantidade_recebiveis == 2
    assert ant.valor_total == _D('15000')
    assert ant.valor_liquido == antecipa.price_anticipation([ra, rb], _RATES, _EVAL).valor_liquido
    assert backend.get_receivable(ra.id).status == 'anticipated'
    assert backend.get_receivable(rb.id).status == 'anticipated'

def test_will_quote_without_storing(backend):
    eng = antecipa.Engine(backend)

    eng.credit.create_line(1, _RATES, _D('100000'))

    rec = _receivable(backend, 10000, datetime.date(2024, 4, 1))
    off = eng.anticipation.quote(1, [rec.id], _EVAL)

    assert off.valor_total == _D('10000')
    assert off.rates == _RATES
    assert backend.get_anticipations() == []
    assert backend.get_receivable(rec.id).status == 'eligible_for_anticipation'

def test_wont_submit_ineligible_receivables(backend):
    eng = antecipa.Engine(backend)

    eng.credit.create_line(1, _RATES, _D('100000'))

    ra = _receivable(backend, 1000, datetime.date(2024, 3, 1), status='submitted')
    rb = _receivable(backend, 1000, datetime.date(2024, 3, 1), project_id=8)
    rc = _receivable(backend, 1000, datetime.date(2024, 3, 1))

    with pytest.raises(antecipa.ValidationError, match=f'receivable #{ra.id} is "submitted", not eligible for anticipation'):
        eng.anticipation.submit(1, 7, [ra.id], _EVAL)

    with pytest.raises(antecipa.ValidationError, match=f'receivable #{rb.id} does not belong to project #7'):
        eng.anticipation.submit(1, 7, [rb.id], _EVAL)

    with pytest.raises(antecipa.ValidationError, match='receivable ids must be distinct'):
        eng.anticipation.submit(1, 7, [rc.id, rc.id], _EVAL)

    with pytest.raises(antecipa.NotFoundError, match='receivable #999 not found'):
        eng.anticipation.submit(1, 7, [999], _EVAL)

    eng.anticipation.submit(1, 7, [rc.id], _EVAL)

    with pytest.raises(antecipa.ValidationError, match=f'receivable #{rc.id} is "anticipated", not eligible for anticipation'):
        eng.anticipation.submit(1, 7, [rc.id], _EVAL)

def test_wont_anticipate_a_receivable_twice(backend):
    '''A troca de status dos recebíveis é atômica com a criação da solicitação.'''

    rec = _receivable(backend, 1000, datetime.date(2024, 3, 1))
    ant = antecipa.AnticipationRequest(1, 7, _D('1000'), _D('990'), 1, _RATES, (rec.id,))

    backend.add_anticipation(ant)

    with pytest.raises(antecipa.ConflictError, match=f'receivable #{rec.id} is no longer eligible for anticipation'):
        backend.add_anticipation(ant)

    assert len(backend.get_anticipations()) == 1

def test_will_log_approvals(backend, caplog):
    eng = antecipa.Engine(backend)

    eng.credit.create_line(1, _RATES, _D('100000'))

    rec = _receivable(backend, 1000, datetime.date(2024, 3, 1))
    ant = eng.anticipation.submit(1, 7, [rec.id], _EVAL)
    lin = eng.credit.get_active_line(1)

    with caplog.at_level(logging.INFO, logger='antecipa'):
        eng.anticipation.transition(ant.id, 'Approved')

    assert ('antecipa', logging.INFO, f'anticipation #{ant.id} approved, 1000 consumed from credit line #{lin.id}') in caplog.record_tuples

def test_wont_approve_when_the_line_changes_under_the_check(backend):
    '''A checagem de capacidade é consultiva; o consumo atômico tem a palavra final.'''

    eng = antecipa.Engine(backend)
    lin = eng.credit.create_line(1, _RATES, _D('10000'))
    rec = _receivable(backend, 10000, datetime.date(2024, 3, 1))
    ant = eng.anticipation.submit(1, 7, [rec.id], _EVAL)
    old = antecipa.CapacityCheck(True, _D('10000'), _D('10000'), 1, lin.id)

    eng.credit.consume(1, _D('5000'))

    with unittest.mock.patch.object(eng.credit, 'check_capacity', return_value=old):
        out = eng.anticipation.transition(ant.id, 'Approved')

    assert not out.ok
    assert out.error.available == _D('5000')
    assert out.error.requested == _D('10000')
    assert eng.anticipation.get(ant.id).status == 'Requested'
    assert eng.credit.get_active_line(1).consumed_credit == _D('5000')

@pytest.mark.slow
def test_will_approve_within_the_limit_concurrently(backend):
    '''Oito aprovações simultâneas de R$ 5.000,00 contra um limite de R$ 20.000,00: exatamente quatro passam.'''

    eng = antecipa.Engine(backend)
    ants = []
    out = {}

    eng.credit.create_line(1, _RATES, _D('20000'))

    for i in range(8):
        rec = _receivable(backend, 5000, datetime.date(2024, 3, 1) + datetime.timedelta(days=i))

        ants.append(eng.anticipation.submit(1, 7, [rec.id], _EVAL))

    bar = threading.Barrier(len(ants))

    def approve(ant):
        bar.wait()

        out[ant.id] = eng.anticipation.transition(ant.id, 'Approved')

    thr = [threading.Thread(target=approve, args=(x,)) for x in ants]

    for x in thr:
        x.start()

    for x in thr:
        x.join()

    assert len(out) == 8
    assert sum(x.ok for x in out.values()) == 4
    assert all(isinstance(x.error, antecipa.InsufficientCredit) for x in out.values() if not x.ok)
    assert eng.credit.get_active_line(1).consumed_credit == _D('20000')
    assert len(backend.get_anticipations(status='Approved')) == 4
# }}}

# 🧾 Parcelas e recebíveis de cobrança. {{{
def test_will_list_sources(backend):
    scn = _scenario(backend)
    src = scn.engine.installment.list_sources(scn.i1.id)

    assert [x.id for x in src.pmt] == [scn.r1.id]
    assert src.billing == []

    scn.engine.installment.attach_billing_receivables(scn.i1.id, [scn.b1.id])

    src = scn.engine.installment.list_sources(scn.i1.id)

    assert [(x.billing_receivable.receivable_id, x.receivable.amount) for x in src.billing] == [(scn.b1.id, _D('6000'))]
    assert src.billing[0].billing_receivable.new_due_date == datetime.date(2024, 3, 10)

def test_will_list_billing_candidates(backend):
    '''Candidatos: recebíveis antecipados do projeto, com vencimento no mês da parcela, ainda não vinculados.'''

    scn = _scenario(backend)

    assert [x.id for x in scn.engine.installment.list_eligible_billing_candidates(scn.plan.id, scn.i1.id)] == [scn.b1.id, scn.b2.id]
    assert [x.id for x in scn.engine.installment.list_eligible_billing_candidates(scn.plan.id, scn.i2.id)] == [scn.b3.id]

    scn.engine.installment.attach_billing_receivables(scn.i1.id, [scn.b1.id])

    assert [x.id for x in scn.engine.installment.list_eligible_billing_candidates(scn.plan.id, scn.i1.id)] == [scn.b2.id]

def test_will_list_billing_candidates_with_settings(backend):
    scn = _scenario(backend, antecipa.Settings(allow_pmt_source_as_billing=True))

    assert [x.id for x in scn.engine.installment.list_eligible_billing_candidates(scn.plan.id, scn.i1.id)] == [scn.b1.id, scn.r1.id, scn.b2.id]

def test_will_list_billing_candidates_of_any_month(backend):
    scn = _scenario(backend, antecipa.Settings(candidates_within_installment_month=False))

    assert [x.id for x in scn.engine.installment.list_eligible_billing_candidates(scn.plan.id, scn.i1.id)] == [scn.b1.id, scn.b2.id, scn.b3.id]

def test_wont_list_candidates_of_foreign_installments(backend):
    scn = _scenario(backend)

    with pytest.raises(antecipa.NotFoundError, match='installment #999 not found'):
        scn.engine.installment.list_eligible_billing_candidates(scn.plan.id, 999)

@pytest.mark.smoke
def test_will_recalculate_the_reserve_fund(backend):
    '''
    Valor total de R$ 20.000,00, duas parcelas de R$ 10.000,00, teto do fundo de reserva de R$ 1.000,00.

    Parcela 1 recebe R$ 11.000,00: sobra R$ 1.000,00 no fundo. Parcela 2 recebe R$ 7.000,00: o fundo cai para -R$ 2.000,00.
    '''

    scn = _scenario(backend)
    res = scn.engine.installment.attach_billing_receivables(scn.i1.id, [scn.b1.id, scn.b2.id])

    assert [x.receivable_id for x in res.created] == [scn.b1.id, scn.b2.id]
    assert res.rejected == []
    assert res.warning is None

    i1, i2 = scn.engine.installment.get_installments(scn.plan.id)

    assert (i1.receivables_total, i1.outstanding_balance, i1.reserve_fund, i1.refund) == (_D('11000'), _D('10000'), _D('1000'), _0)
    assert (i2.receivables_total, i2.outstanding_balance, i2.reserve_fund, i2.refund) == (_0, _0, _D('-9000'), _0)

    scn.engine.installment.attach_billing_receivables(scn.i2.id, [scn.b3.id])

    i1, i2 = scn.engine.installment.get_installments(scn.plan.id)

    assert (i2.receivables_total, i2.outstanding_balance, i2.reserve_fund, i2.refund) == (_D('7000'), _0, _D('-2000'), _0)

def test_will_refund_above_the_cap(backend):
    scn = _scenario(backend, cap='400')

    scn.engine.installment.attach_billing_receivables(scn.i1.id, [scn.b1.id, scn.b2.id])

    i1, i2 = scn.engine.installment.get_installments(scn.plan.id)

    assert i1.reserve_fund == _D('400')
    assert i1.refund == _D('600')
    assert i2.reserve_fund == _D('-9600')
    assert i2.refund == _0

def test_will_start_the_balance_at_installment_zero(backend):
    scn = _scenario(backend)
    ins = scn.engine.installment.add_installment(scn.plan.id, 0, datetime.date(2024, 2, 10), _D('500'))
    lst = scn.engine.installment.recalculate_plan(scn.plan.id)

    assert [x.installment_number for x in lst] == [0, 1, 2]
    assert lst[0].id == ins.id
    assert [x.outstanding_balance for x in lst] == [_D('19500'), _D('9500'), _0]
    assert [x.reserve_fund for x in lst] == [_D('-500'), _D('-10500'), _D('-20500')]

def test_wont_attach_a_receivable_twice(backend, caplog):
    '''O mesmo recebível não pode ser vinculado a duas parcelas; a primeira vinculação permanece.'''

    scn = _scenario(backend)

    scn.engine.installment.attach_billing_receivables(scn.i1.id, [scn.b1.id])

    res = scn.engine.installment.attach_billing_receivables(scn.i2.id, [scn.b1.id, scn.b3.id])
    err = res.rejected[0].error

    assert [x.receivable_id for x in res.created] == [scn.b3.id]
    assert res.rejected[0].item_id == scn.b1.id
    assert isinstance(err, antecipa.ConflictError)
    assert err.receivable_id == scn.b1.id
    assert err.installment_id == scn.i1.id
    assert res.warning == f'receivables not attached: #{scn.b1.id} (receivable #{scn.b1.id} is already attached to installment #{scn.i1.id})'
    assert [x.installment_id for x in backend.get_billing_receivables(receivable_id=scn.b1.id)] == [scn.i1.id]
    assert ('antecipa', logging.WARNING, f'receivable #{scn.b1.id} not attached to installment #{scn.i2.id}: {err}') in caplog.record_tuples

    with pytest.raises(antecipa.ConflictError):
        backend.add_billing_receivable(antecipa.BillingReceivable(scn.i2.id, scn.b1.id, datetime.date(2024, 4, 10)))

def test_will_attach_with_the_short_name(backend):
    scn = _scenario(backend)
    res = scn.engine.installment.attach_billing(scn.i1.id, [scn.b1.id])

    assert [x.receivable_id for x in res.created] == [scn.b1.id]
    assert res.rejected == []

def test_wont_attach_pmt_sources_by_default(backend):
    scn = _scenario(backend)
    res = scn.engine.installment.attach_billing_receivables(scn.i1.id, [scn.r1.id])

    assert res.created == []
    assert isinstance(res.rejected[0].error, antecipa.ValidationError)
    assert res.rejected[0].reason == f'receivable #{scn.r1.id} is a PMT source and can not be attached as a billing receivable'

def test_will_attach_pmt_sources_when_allowed(backend):
    scn = _scenario(backend, antecipa.Settings(allow_pmt_source_as_billing=True))
    res = scn.engine.installment.attach_billing_receivables(scn.i1.id, [scn.r1.id])

    assert [x.receivable_id for x in res.created] == [scn.r1.id]

def test_wont_attach_foreign_receivables(backend):
    scn = _scenario(backend)
    rec = _receivable(backend, 1000, datetime.date(2024, 3, 1), project_id=8, status='anticipated')
    res = scn.engine.installment.attach_billing_receivables(scn.i1.id, [rec.id, 999])

    assert res.created == []
    assert [x.reason for x in res.rejected] == [f'receivable #{rec.id} does not belong to project #7', 'receivable #999 not found']

    with pytest.raises(antecipa.ValidationError, match='at least one receivable is required'):
        scn.engine.installment.attach_billing_receivables(scn.i1.id, [])

def test_will_detach_and_recalculate(backend):
    scn = _scenario(backend)
    res = scn.engine.installment.attach_billing_receivables(scn.i1.id, [scn.b1.id, scn.b2.id])
    bat = scn.engine.boleto.create_boletos([res.created[0].id], datetime.date(2024, 2, 1))
    bol = bat.created[0]

    scn.engine.installment.detach_billing_receivable(res.created[0].id)

    i1, _ = scn.engine.installment.get_installments(scn.plan.id)

    assert i1.receivables_total == _D('5000')
    assert i1.reserve_fund == _D('-5000')
    assert backend.get_receivable(scn.b1.id).status == 'anticipated'

    with pytest.raises(antecipa.NotFoundError, match=f'boleto #{bol.id} not found'):
        scn.engine.boleto.get(bol.id)

    assert [x.id for x in scn.engine.installment.list_eligible_billing_candidates(scn.plan.id, scn.i1.id)] == [scn.b1.id]

def test_will_summarize_reconciliation(backend):
    '''A diferença é apenas informativa: positiva é subcolateralizada, negativa sobrecolateralizada.'''

    scn = _scenario(backend)
    sm1 = scn.engine.installment.reconciliation_summary(scn.i1.id, [scn.b1.id, scn.b2.id])

    assert (sm1.pmt, sm1.total_selected, sm1.difference, sm1.count) == (_D('10000'), _D('11000'), _D('-1000'), 2)

    scn.engine.installment.attach_billing_receivables(scn.i1.id, [scn.b2.id])

    sm2 = scn.engine.installment.reconciliation_summary(scn.i1.id)

    assert (sm2.total_selected, sm2.difference, sm2.count) == (_D('5000'), _D('5000'), 1)

def test_wont_create_plans_for_unapproved_anticipations(backend):
    scn = _scenario(backend)

    with pytest.raises(antecipa.ValidationError, match=f'anticipation #{scn.oth.id} is Requested, a payment plan requires an approved anticipation'):
        scn.engine.installment.create_plan(scn.oth.id, 10, _D('1000'))

    with pytest.raises(antecipa.ConflictError, match=f'anticipation #{scn.ant.id} already has a payment plan'):
        scn.engine.installment.create_plan(scn.ant.id, 10, _D('1000'))

def test_wont_create_plans_with_bad_terms(backend):
    eng = antecipa.Engine(backend)

    eng.credit.create_line(1, _RATES, _D('100000'))

    rec = _receivable(backend, 1000, datetime.date(2024, 3, 1))
    ant = eng.anticipation.submit(1, 7, [rec.id], _EVAL)

    eng.anticipation.transition(ant.id, 'Approved')

    with pytest.raises(antecipa.ValidationError, match='"billing_day" must be between 1 and 31, got 32'):
        eng.installment.create_plan(ant.id, 32, _D('1000'))

    with pytest.raises(antecipa.ValidationError, match='"index_id" and "adjustment_base_date" must be given together'):
        eng.installment.create_plan(ant.id, 10, _D('1000'), index_id=1)

def test_wont_add_installments_from_foreign_receivables(backend):
    scn = _scenario(backend)

    with pytest.raises(antecipa.ValidationError, match=f'receivable #{scn.b1.id} is not part of anticipation #{scn.ant.id}'):
        scn.engine.installment.add_installment(scn.plan.id, 3, datetime.date(2024, 5, 10), _D('1'), pmt_receivable_ids=[scn.b1.id])

    with pytest.raises(antecipa.ConflictError, match=f'payment plan #{scn.plan.id} already has installment number 1'):
        scn.engine.installment.add_installment(scn.plan.id, 1, datetime.date(2024, 5, 10), _D('1'))
# }}}

# 📈 Correção por índice. {{{
def _index(engine, updates):
    idx = engine.index.add_index('IPCA')

    for month, pct in updates:
        engine.index.add_update(idx.id, month, _D(pct))

    return idx

def test_will_compound_nothing_over_a_single_month(backend):
    eng = antecipa.Engine(backend)
    idx = _index(eng, [(datetime.date(2024, 1, 1), '2')])
    adj = eng.index.compound_adjustment(idx.id, datetime.date(2024, 1, 5), datetime.date(2024, 1, 25))

    assert adj.factor == _1
    assert adj.percentage == _0
    assert adj.applied_months == 0
    assert adj.months == []

@pytest.mark.smoke
def test_will_compound_monthly_updates(backend):
    '''De janeiro a março, a correção compõe fevereiro e março.'''

    eng = antecipa.Engine(backend)
    idx = _index(eng, [(datetime.date(2024, 1, 1), '2'), (datetime.date(2024, 2, 1), '1'), (datetime.date(2024, 3, 1), '0.5')])
    adj = eng.index.compound_adjustment(idx.id, datetime.date(2024, 1, 15), datetime.date(2024, 3, 20))

    assert adj.factor == _D('1.01505')
    assert adj.percentage == _D('1.505')
    assert adj.applied_months == 2
    assert [x.reference_month for x in adj.months] == [datetime.date(2024, 2, 1), datetime.date(2024, 3, 1)]
    assert (adj.start_month, adj.end_month) == (datetime.date(2024, 1, 1), datetime.date(2024, 3, 1))

def test_will_compound_the_start_month_when_told(backend):
    eng = antecipa.Engine(backend, antecipa.Settings(include_start_month=True))
    idx = _index(eng, [(datetime.date(2024, 1, 1), '2'), (datetime.date(2024, 2, 1), '1'), (datetime.date(2024, 3, 1), '0.5')])
    adj = eng.index.compound_adjustment(idx.id, datetime.date(2024, 1, 1), datetime.date(2024, 3, 1))

    assert adj.factor == _D('1.035351')
    assert adj.applied_months == 3

    adj = eng.index.compound_adjustment(idx.id, datetime.date(2024, 1, 1), datetime.date(2024, 1, 1))

    assert adj.factor == _D('1.02')

def test_will_warn_about_gaps(backend, caplog):
    '''Meses sem atualização contam como 0%, com um aviso.'''

    eng = antecipa.Engine(backend)
    idx = _index(eng, [(datetime.date(2024, 3, 1), '0.5')])
    adj = eng.index.compound_adjustment(idx.id, datetime.date(2024, 1, 1), datetime.date(2024, 3, 1))

    assert adj.factor == _D('1.005')
    assert adj.applied_months == 1
    assert caplog.record_tuples == [('antecipa', logging.WARNING, '1 of 2 months without updates for index "IPCA" between 2024-02 and 2024-03, counted as 0%')]

def test_wont_compound_backwards(backend):
    eng = antecipa.Engine(backend)
    idx = _index(eng, [])

    with pytest.raises(antecipa.ValidationError, match='end month 2023-12 precedes start month 2024-01'):
        eng.index.compound_adjustment(idx.id, datetime.date(2024, 1, 1), datetime.date(2023, 12, 31))

    with pytest.raises(antecipa.NotFoundError, match='index #999 not found'):
        eng.index.compound_adjustment(999, datetime.date(2024, 1, 1), datetime.date(2024, 2, 1))

def test_will_store_updates_by_month(backend):
    eng = antecipa.Engine(backend)
    idx = _index(eng, [])
    upd = eng.index.add_update(idx.id, datetime.date(2024, 2, 15), _D('0.42'))

    assert upd.reference_month == datetime.date(2024, 2, 1)

    with pytest.raises(antecipa.ConflictError, match=f'index #{idx.id} already has an update for 2024-02'):
        eng.index.add_update(idx.id, datetime.date(2024, 2, 28), _D('0.5'))

    with pytest.raises(antecipa.ConflictError, match='index "IPCA" already exists'):
        eng.index.add_index('IPCA')

def test_will_round_the_billed_value_half_up():
    assert antecipa.calculate_billed_value(_D('6000'), _D('1.505')) == _D('6090.30')
    assert antecipa.calculate_billed_value(_D('100'), _D('0.005')) == _D('100.01')
    assert antecipa.calculate_billed_value(_D('100'), _0) == _D('100.00')
# }}}

# 🧾 Boletos. {{{
def test_will_create_boletos_at_face_value(backend):
    scn = _scenario(backend)
    res = scn.engine.installment.attach_billing_receivables(scn.i1.id, [scn.b1.id])
    bat = scn.engine.boleto.create_boletos([res.created[0].id], datetime.date(2024, 2, 1))
    bol = bat.created[0]

    assert bat.errors == []
    assert bol.face_value == _D('6000')
    assert bol.billed_value == _D('6000')
    assert bol.adjustment_percentage is None
    assert bol.index_id is None
    assert bol.due_date == datetime.date(2024, 3, 10)
    assert (bol.emission_status, bol.payment_status) == ('Created', 'NotApplicable')

def test_will_create_indexed_boletos(backend):
    '''Base em 15/01/2024, cálculo em 20/03/2024: correção de fevereiro e março, 1,505%.'''

    scn = _scenario(backend, indexed=True)
    res = scn.engine.installment.attach_billing_receivables(scn.i1.id, [scn.b1.id])
    bol = scn.engine.boleto.create_boletos([res.created[0].id], datetime.date(2024, 3, 20)).created[0]

    assert bol.index_id == scn.plan.index_id
    assert bol.adjustment_percentage == _D('1.505')
    assert bol.billed_value == _D('6090.30')

def test_wont_create_duplicate_boletos(backend):
    scn = _scenario(backend)
    res = scn.engine.installment.attach_billing_receivables(scn.i1.id, [scn.b1.id])
    brid = res.created[0].id

    scn.engine.boleto.create_boletos([brid], datetime.date(2024, 2, 1))

    bat = scn.engine.boleto.create_boletos([brid, 999], datetime.date(2024, 2, 1))

    assert bat.created == []
    assert [type(x.error) for x in bat.errors] == [antecipa.ConflictError, antecipa.NotFoundError]
    assert [x.reason for x in bat.errors] == [f'billing receivable #{brid} already has a boleto', 'billing receivable #999 not found']

def test_will_derive_the_payment_status(backend):
    scn = _scenario(backend)
    res = scn.engine.installment.attach_billing_receivables(scn.i1.id, [scn.b1.id])
    bol = scn.engine.boleto.create_boletos([res.created[0].id], datetime.date(2024, 2, 1)).created[0]

    bol = scn.engine.boleto.set_emission_status(bol.id, 'Issued')

    assert (bol.emission_status, bol.payment_status) == ('Issued', 'Open')

    bol = scn.engine.boleto.apply_bank_event(bol.id, 'overdue')

    assert (bol.emission_status, bol.payment_status) == ('Issued', 'Overdue')

    bol = scn.engine.boleto.set_emission_status(bol.id, 'Canceled')

    assert (bol.emission_status, bol.payment_status) == ('Canceled', 'NotApplicable')

    with pytest.raises(antecipa.ValidationError, match=f'boleto #{bol.id} is Canceled, bank events only apply to issued boletos'):
        scn.engine.boleto.apply_bank_event(bol.id, 'paid')

@pytest.mark.smoke
def test_will_release_credit_when_paid(backend):
    '''O primeiro pagamento de um boleto devolve seu valor de face à linha de crédito.'''

    scn = _scenario(backend)
    res = scn.engine.installment.attach_billing_receivables(scn.i1.id, [scn.b1.id])
    bol = scn.engine.boleto.create_boletos([res.created[0].id], datetime.date(2024, 2, 1)).created[0]

    assert scn.engine.credit.get_active_line(1).consumed_credit == _D('20000')

    scn.engine.boleto.set_emission_status(bol.id, 'Issued')
    scn.engine.boleto.apply_bank_event(bol.id, 'registered')

    bol = scn.engine.boleto.apply_bank_event(bol.id, 'paid')

    assert bol.payment_status == 'Paid'
    assert scn.engine.credit.get_active_line(1).consumed_credit == _D('14000')

    bol = scn.engine.boleto.apply_bank_event(bol.id, 'credited')

    assert bol.payment_status == 'Paid'
    assert scn.engine.credit.get_active_line(1).consumed_credit == _D('14000')

def test_wont_release_credit_twice(backend):
    '''Um boleto pago não pode ser cancelado nem reemitido, e não volta a ficar em aberto; o crédito é devolvido uma única vez.'''

    scn = _scenario(backend)
    res = scn.engine.installment.attach_billing_receivables(scn.i1.id, [scn.b1.id])
    bol = scn.engine.boleto.create_boletos([res.created[0].id], datetime.date(2024, 2, 1)).created[0]

    scn.engine.boleto.set_emission_status(bol.id, 'Issued')
    scn.engine.boleto.apply_bank_event(bol.id, 'paid')

    with pytest.raises(antecipa.InvalidTransition, match='invalid boleto status transition from Issued/Paid to Canceled'):
        scn.engine.boleto.set_emission_status(bol.id, 'Canceled')

    with pytest.raises(antecipa.InvalidTransition, match='invalid boleto status transition from Issued/Paid to Created'):
        scn.engine.boleto.set_emission_status(bol.id, 'Created')

    with pytest.raises(antecipa.InvalidTransition, match='invalid boleto status transition from Paid to Overdue'):
        scn.engine.boleto.apply_bank_event(bol.id, 'overdue')

    with pytest.raises(antecipa.InvalidTransition, match='invalid boleto status transition from Paid to Open'):
        scn.engine.boleto.apply_bank_event(bol.id, 'registered')

    bol = scn.engine.boleto.set_emission_status(bol.id, 'Issued')

    assert (bol.emission_status, bol.payment_status) == ('Issued', 'Paid')

    bol = scn.engine.boleto.apply_bank_event(bol.id, 'paid')

    assert (bol.emission_status, bol.payment_status) == ('Issued', 'Paid')
    assert scn.engine.credit.get_active_line(1).consumed_credit == _D('14000')

def test_will_record_payments_without_an_active_line(backend, caplog):
    '''Sem linha de crédito ativa, o pagamento é registrado e a devolução do crédito é apenas reportada.'''

    scn = _scenario(backend)
    res = scn.engine.installment.attach_billing_receivables(scn.i1.id, [scn.b1.id])
    bol = scn.engine.boleto.create_boletos([res.created[0].id], datetime.date(2024, 2, 1)).created[0]
    err = antecipa.NotFoundError('company #1 has no active credit line')

    scn.engine.boleto.set_emission_status(bol.id, 'Issued')

    with unittest.mock.patch.object(scn.engine.credit, 'get_active_line', side_effect=err):
        new = scn.engine.boleto.apply_bank_event(bol.id, 'paid')

    assert new.payment_status == 'Paid'
    assert scn.engine.boleto.get(bol.id).payment_status == 'Paid'
    assert scn.engine.credit.get_active_line(1).consumed_credit == _D('20000')
    assert ('antecipa', logging.WARNING, f'boleto #{bol.id} paid, but its face value {bol.face_value} was not released: {err}') in caplog.record_tuples

def test_wont_release_credit_when_told_so(backend):
    scn = _scenario(backend, antecipa.Settings(release_credit_on_payment=False))
    res = scn.engine.installment.attach_billing_receivables(scn.i1.id, [scn.b1.id])
    bol = scn.engine.boleto.create_boletos([res.created[0].id], datetime.date(2024, 2, 1)).created[0]

    scn.engine.boleto.set_emission_status(bol.id, 'Issued')
    scn.engine.boleto.apply_bank_event(bol.id, 'paid')

    assert scn.engine.credit.get_active_line(1).consumed_credit == _D('20000')

def test_wont_apply_unknown_bank_events():
    eng = antecipa.Engine()

    with pytest.raises(typeguard.TypeCheckError, match=r'argument "event" \(str\)'):
        eng.boleto.apply_bank_event(1, 'bounced')  # pyright: ignore
# }}}

# ⚙️ Configuração e armazenamento. {{{
def test_will_read_settings_from_env():
    env = {'ANTECIPA_ALLOW_PMT_SOURCE_AS_BILLING': 'true', 'ANTECIPA_RELEASE_CREDIT_ON_PAYMENT': 'não', 'OTHER': '1'}
    cfg = antecipa.Settings.from_env(env)

    assert cfg.allow_pmt_source_as_billing is True
    assert cfg.release_credit_on_payment is False
    assert cfg.candidates_within_installment_month is True
    assert cfg.include_start_month is False

    with unittest.mock.patch.dict('os.environ', {'ANTECIPA_INCLUDE_START_MONTH': 's'}):
        assert antecipa.Settings.from_env().include_start_month is True

def test_will_return_copies(backend):
    rec = _receivable(backend, 1000, datetime.date(2024, 3, 1))
    cpy = backend.get_receivable(rec.id)

    cpy.status = 'paid'

    assert backend.get_receivable(rec.id).status == 'eligible_for_anticipation'

def test_will_persist_in_sqlite(tmp_path):
    pth = str(tmp_path / 'antecipa.db')
    bck = antecipa.SqliteBackend(pth)
    eng = antecipa.Engine(bck)
    lin = eng.credit.create_line(1, _RATES, _D('1234.56'))

    eng.credit.consume(1, _D('0.56'))
    bck.close()

    bck = antecipa.SqliteBackend(pth)
    lin = bck.get_credit_line(lin.id)

    assert lin.credit_limit == _D('1234.56')
    assert lin.consumed_credit == _D('0.56')
    assert lin.available_credit == _D('1234.00')
    assert lin.rates == _RATES
    assert lin.status == 'Active'

    bck.close()

def test_wont_find_unknown_entities(backend):
    with pytest.raises(antecipa.NotFoundError, match='anticipation #5 not found'):
        backend.get_anticipation(5)

    with pytest.raises(antecipa.NotFoundError, match='credit line #5 not found'):
        backend.try_consume_credit(5, _1)

    with pytest.raises(antecipa.NotFoundError, match='billing receivable #5 not found'):
        backend.delete_billing_receivable(5)

    assert backend.get_boleto_for(5) is None
# }}}

# vi:fdm=marker:
