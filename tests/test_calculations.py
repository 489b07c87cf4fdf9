from decimal import Decimal

import pytest

from calculations import compute_totals, next_invoice_number, to_decimal, validate_line_item
from errors import InvoiceNumberError, ValidationError


def test_single_item_with_tax():
    totals = compute_totals([{'description': 'Design', 'quantity': 2, 'rate': 100, 'tax_rate': 18, 'discount_rate': 0}])

    line = totals['items'][0]
    assert line['line_subtotal'] == Decimal('200.00')
    assert line['discount'] == Decimal('0.00')
    assert line['tax'] == Decimal('36.00')
    assert line['amount'] == Decimal('236.00')
    assert totals['subtotal'] == Decimal('200.00')
    assert totals['tax_amount'] == Decimal('36.00')
    assert totals['total'] == Decimal('236.00')


def test_single_item_with_discount():
    totals = compute_totals([{'description': 'Licence', 'quantity': 1, 'rate': 1000, 'tax_rate': 0, 'discount_rate': 10}])

    line = totals['items'][0]
    assert line['discount'] == Decimal('100.00')
    assert line['tax'] == Decimal('0.00')
    assert line['amount'] == Decimal('900.00')
    assert totals['discount_amount'] == Decimal('100.00')
    assert totals['total'] == Decimal('900.00')


def test_discount_applies_before_tax():
    totals = compute_totals([{'description': 'Kit', 'quantity': 4, 'rate': '25.50', 'tax_rate': 12, 'discount_rate': 5}])

    line = totals['items'][0]
    assert line['line_subtotal'] == Decimal('102.00')
    assert line['discount'] == Decimal('5.10')
    assert line['tax'] == Decimal('11.63')  # 96.90 * 12% = 11.628
    assert line['amount'] == Decimal('108.53')


@pytest.mark.parametrize('items', [
    [{'description': 'a', 'quantity': '0.1', 'rate': '0.2', 'tax_rate': '33.33', 'discount_rate': '7'}],
    [{'description': 'a', 'quantity': 3, 'rate': '19.99', 'tax_rate': 18, 'discount_rate': '12.5'},
     {'description': 'b', 'quantity': '1.5', 'rate': '0.33', 'tax_rate': 5},
     {'description': 'c', 'quantity': 7, 'rate': '1234.56', 'discount_rate': 100}],
])
def test_total_invariant_holds_exactly(items):
    totals = compute_totals(items)

    assert totals['total'] == totals['subtotal'] - totals['discount_amount'] + totals['tax_amount']
    assert totals['total'] == sum(line['amount'] for line in totals['items'])


def test_recomputing_from_stored_values_is_idempotent():
    first = compute_totals([
        {'description': 'a', 'quantity': '2.5', 'rate': '13.37', 'tax_rate': '18', 'discount_rate': '3.5'},
        {'description': 'b', 'quantity': 1, 'rate': '0.05', 'tax_rate': '5'},
    ])
    stored = [{k: str(v) for k, v in line.items()} for line in first['items']]

    second = compute_totals(stored)

    for key in ('subtotal', 'discount_amount', 'tax_amount', 'total'):
        assert second[key] == first[key]
    assert [l['amount'] for l in second['items']] == [l['amount'] for l in first['items']]


def test_half_cent_uses_bankers_rounding():
    # 0.125 rounds to the even cent, 0.135 rounds up to the even cent
    low = compute_totals([{'description': 'x', 'quantity': 1, 'rate': '0.125'}])
    high = compute_totals([{'description': 'x', 'quantity': 1, 'rate': '0.135'}])
    assert low['subtotal'] == Decimal('0.12')
    assert high['subtotal'] == Decimal('0.14')


def test_sub_cent_rate_is_not_rounded_before_multiplying():
    totals = compute_totals([{'description': 'Screws', 'quantity': 1000, 'rate': '0.125'}])

    assert totals['items'][0]['rate'] == Decimal('0.125')
    assert totals['subtotal'] == Decimal('125.00')
    assert totals['total'] == Decimal('125.00')


def test_sub_cent_quantity_is_accepted():
    totals = compute_totals([{'description': 'Gold', 'quantity': '0.004', 'rate': 5000}])

    assert totals['items'][0]['quantity'] == Decimal('0.004')
    assert totals['subtotal'] == Decimal('20.00')


@pytest.mark.parametrize('value, places, message', [
    ('0.12345', 4, 'more than 4 decimal places'),
    ('18.125', 2, 'more than 2 decimal places'),
    ('1e10', 2, 'too large'),
    ('-1e12', 4, 'too large'),
])
def test_to_decimal_rejects_instead_of_rounding(value, places, message):
    with pytest.raises(ValidationError) as exc:
        to_decimal(value, 'amount', places)
    assert message in exc.value.message


def test_to_decimal_keeps_trailing_zero_inputs():
    assert to_decimal('2.50000', 'quantity', 4) == Decimal('2.5')
    assert to_decimal(7) == Decimal('7.00')


def test_totals_beyond_column_range_are_rejected():
    huge = {'description': 'x', 'quantity': '9999999999.99', 'rate': '9999999999.99'}
    with pytest.raises(ValidationError) as exc:
        compute_totals([huge])
    assert 'Item 1: amount is too large' in exc.value.message

    # Each line fits, the sum does not
    big = {'description': 'x', 'quantity': 1, 'rate': '6000000000'}
    with pytest.raises(ValidationError) as exc:
        compute_totals([big, big])
    assert exc.value.message == 'Invoice total is too large'

    # Tax can push a line over the limit too
    taxed = {'description': 'x', 'quantity': 1, 'rate': '9000000000', 'tax_rate': 18}
    with pytest.raises(ValidationError):
        compute_totals([taxed])


@pytest.mark.parametrize('item, message', [
    ({'description': 'x', 'quantity': 0, 'rate': 1}, 'quantity must be greater than 0'),
    ({'description': 'x', 'quantity': -1, 'rate': 1}, 'quantity must be greater than 0'),
    ({'description': 'x', 'quantity': 1, 'rate': -0.01}, 'rate must be non-negative'),
    ({'description': 'x', 'quantity': 1, 'rate': 1, 'tax_rate': 101}, 'tax_rate must be between 0 and 100'),
    ({'description': 'x', 'quantity': 1, 'rate': 1, 'discount_rate': -5}, 'discount_rate must be between 0 and 100'),
    ({'description': 'x', 'quantity': 'lots', 'rate': 1}, 'quantity must be a number'),
    ({'description': 'x', 'quantity': 1, 'rate': 'NaN'}, 'rate must be a finite number'),
    ({'description': '', 'quantity': 1, 'rate': 1}, 'description is required'),
    ({'description': 'x', 'rate': 1}, 'quantity is required'),
    ({'description': 'x', 'quantity': 1, 'rate': '0.00001'}, 'rate has more than 4 decimal places'),
    ({'description': 'x', 'quantity': 1, 'rate': 1, 'tax_rate': '12.345'}, 'tax_rate has more than 2 decimal places'),
])
def test_invalid_line_items_are_rejected(item, message):
    with pytest.raises(ValidationError) as exc:
        validate_line_item(item)
    assert message in exc.value.message


def test_empty_item_list_is_rejected():
    with pytest.raises(ValidationError):
        compute_totals([])
    with pytest.raises(ValidationError):
        compute_totals(None)


def test_first_invoice_number():
    assert next_invoice_number('INV-') == 'INV-0001'
    assert next_invoice_number('INV-', None) == 'INV-0001'


def test_next_invoice_number_increments_and_pads():
    assert next_invoice_number('INV-', 'INV-0042') == 'INV-0043'
    assert next_invoice_number('ME/', 'ME/0009') == 'ME/0010'


def test_invoice_number_grows_past_four_digits():
    assert next_invoice_number('INV-', 'INV-9999') == 'INV-10000'


@pytest.mark.parametrize('last', ['BILL-0001', 'INV-00A1', 'INV-'])
def test_unparseable_last_number_raises(last):
    with pytest.raises(InvoiceNumberError):
        next_invoice_number('INV-', last)
