from datetime import datetime, timezone

import pytest

from attendance_bridge.extraction import (
    DateWindow,
    PreformattedBlockStrategy,
    RawLineStrategy,
    TabularStrategy,
    extract_records,
    join_datetime_tokens,
    normalize_row,
)


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


JANUARY = DateWindow(start=utc(2024, 1, 1, 0, 0, 0), end=utc(2024, 1, 31, 23, 59, 59))

PRE_PAYLOAD = (
    "<html><body><pre>\n"
    "EmpCode\tPunchTime\tVerify\tStatus\tWorkCode\n"
    "101\t2024-01-05 09:00:00\t1\t0\t1\n"
    "102\t2024-01-05 17:30:00\t15\t1\t0\n"
    "</pre></body></html>"
)

TABLE_PAYLOAD = """
<table class="grid">
  <tr><th>Emp Code</th><th>Punch Time</th><th>Verify</th><th>Status</th><th>Work</th></tr>
  <tr><td>201</td><td>2024/01/06 08:00:00</td><td>2</td><td>0</td><td>1</td></tr>
  <tr><td><b>202</b></td><td>01/07/2024 18:15:00</td><td>1</td><td>1</td><td>&nbsp;3</td>
  <tr><td></td><td>203</td><td>2024-01-08 07:45:00</td><td>1</td><td>0</td><td>1</td></tr>
</table>
"""


def test_numeric_employee_code_is_accepted():
    record = normalize_row(["99", "2024-01-01 08:00:00", "1", "0", "1"], "SN1")
    assert record is not None
    assert record.employee_code == "99"
    assert record.punch_time == utc(2024, 1, 1, 8, 0, 0)


@pytest.mark.parametrize("code", ["EMP99", "99a", "9 9", "", "   "])
def test_non_numeric_employee_code_is_rejected(code):
    assert normalize_row([code, "2024-01-01 08:00:00", "1", "0", "1"], "SN1") is None


@pytest.mark.parametrize("header", ["EmpCode", "CODE", "User ID", "emp"])
def test_header_rows_are_rejected(header):
    assert normalize_row([header, "2024-01-01 08:00:00", "1", "0", "1"], "SN1") is None


def test_date_window_is_inclusive():
    at_start = normalize_row(["1", "2024-01-01T00:00:00Z", "1", "0", "1"], "SN1", JANUARY)
    at_end = normalize_row(["1", "2024-01-31T23:59:59Z", "1", "0", "1"], "SN1", JANUARY)
    after = normalize_row(["1", "2024-02-01T00:00:00Z", "1", "0", "1"], "SN1", JANUARY)

    assert at_start is not None
    assert at_end is not None
    assert after is None


def test_open_window_bounds():
    assert DateWindow().contains(utc(1999, 1, 1))
    assert DateWindow(start=utc(2024, 1, 1)).contains(utc(2030, 1, 1))
    assert not DateWindow(end=utc(2024, 1, 1)).contains(utc(2024, 1, 1, 0, 0, 1))


def test_inverted_window_matches_nothing():
    window = DateWindow(start=utc(2024, 2, 1), end=utc(2024, 1, 1))
    assert normalize_row(["1", "2024-01-15 10:00:00", "1", "0", "1"], "SN1", window) is None


def test_missing_numeric_fields_get_defaults():
    record = normalize_row(["101", "2024-01-05 09:00:00", "", "", ""], "SN1")
    assert (record.verify_type, record.status, record.work_code) == (1, 0, 1)


def test_short_rows_get_defaults_for_absent_fields():
    record = normalize_row(["101", "2024-01-05 09:00:00"], "SN1")
    assert (record.verify_type, record.status, record.work_code) == (1, 0, 1)


def test_garbage_numeric_fields_fall_back_but_zero_is_kept():
    record = normalize_row(["101", "2024-01-05 09:00:00", "x", "4 (OT)", "0"], "SN1")
    assert (record.verify_type, record.status, record.work_code) == (1, 4, 0)


@pytest.mark.parametrize("huge", ["99999999999999999999", "-99999999999999999999", "9" * 5000])
def test_numeric_fields_outside_sqlite_range_fall_back(huge):
    record = normalize_row(["101", "2024-01-05 09:00:00", huge, huge, huge], "SN1")
    assert (record.verify_type, record.status, record.work_code) == (1, 0, 1)


def test_largest_sqlite_integer_is_kept():
    record = normalize_row(["101", "2024-01-05 09:00:00", "9223372036854775807", "0", "1"], "SN1")
    assert record.verify_type == 2**63 - 1


def test_epoch_seconds_punch_time():
    record = normalize_row(["101", "1704441600", "1", "0", "1"], "SN1")
    assert record.to_dict()["punchTime"] == "2024-01-05T08:00:00.000Z"


def test_unparseable_punch_time_rejects_row():
    assert normalize_row(["101", "not a date", "1", "0", "1"], "SN1") is None


def test_normalization_is_idempotent_apart_from_id():
    fields = ["7", "2024-01-05 09:00:00", "15", "1", "2", "extra"]
    first = normalize_row(fields, "SN1")
    second = normalize_row(fields, "SN1")

    assert first.id != second.id
    strip_id = lambda r: {k: v for k, v in r.to_dict().items() if k != "id"}
    assert strip_id(first) == strip_id(second)
    assert strip_id(first) == {
        "sn": "SN1",
        "empCode": "7",
        "punchTime": "2024-01-05T09:00:00.000Z",
        "verifyType": 15,
        "status": 1,
        "workCode": 2,
    }


def test_preformatted_strategy_splits_on_tabs():
    rows = list(PreformattedBlockStrategy().candidates(PRE_PAYLOAD))
    assert rows[1] == ["101", "2024-01-05 09:00:00", "1", "0", "1"]
    assert len(rows) == 3


def test_raw_line_strategy_tries_tabs_and_whitespace():
    payload = "<p>101\t2024-01-05 09:00:00\t1\t0\t1</p>\n<div>102 2024-01-05 10:00:00 1 0 1</div>\nnoise"
    rows = list(RawLineStrategy().candidates(payload))

    assert ["101", "2024-01-05 09:00:00", "1", "0", "1"] in rows
    assert ["102", "2024-01-05 10:00:00", "1", "0", "1"] in rows
    # the tabbed line also yields a whitespace split candidate
    assert ["101", "2024-01-05 09:00:00", "1", "0", "1"] == rows[1]


def test_join_datetime_tokens_handles_meridiem():
    tokens = ["5", "1/5/2024", "9:00:00", "AM", "1", "0", "1"]
    assert join_datetime_tokens(tokens) == ["5", "1/5/2024 9:00:00 AM", "1", "0", "1"]


def test_tabular_strategy_tolerates_unclosed_rows_and_empty_cells():
    rows = list(TabularStrategy().candidates(TABLE_PAYLOAD))

    assert ["201", "2024/01/06 08:00:00", "2", "0", "1"] in rows
    assert ["202", "01/07/2024 18:15:00", "1", "1", "3"] in rows
    assert ["203", "2024-01-08 07:45:00", "1", "0", "1"] in rows


def test_extract_records_from_preformatted_payload():
    records = extract_records(PRE_PAYLOAD, "SN1", JANUARY)

    assert [(r.employee_code, r.verify_type, r.status, r.work_code) for r in records] == [
        ("101", 1, 0, 1),
        ("102", 15, 1, 0),
    ]
    assert all(r.serial_number == "SN1" for r in records)


def test_extract_records_from_table_payload():
    records = extract_records(TABLE_PAYLOAD, "SN1")
    assert sorted(r.employee_code for r in records) == ["201", "202", "203"]


def test_extract_records_ids_are_unique():
    records = extract_records(PRE_PAYLOAD, "SN1", dedupe=False)
    assert len({r.id for r in records}) == len(records)


def test_duplicates_across_strategies_collapse_when_enabled():
    without = extract_records(PRE_PAYLOAD, "SN1", dedupe=False)
    with_dedupe = extract_records(PRE_PAYLOAD, "SN1", dedupe=True)

    assert len(without) > len(with_dedupe) == 2


def test_extract_records_applies_window():
    payload = "<pre>1\t2023-12-31 23:59:59\t1\t0\t1\n2\t2024-01-15 12:00:00\t1\t0\t1\n</pre>"
    records = extract_records(payload, "SN1", JANUARY)
    assert [r.employee_code for r in records] == ["2"]


def test_extract_records_with_nothing_useful_is_empty():
    assert extract_records("<html><body>No data</body></html>", "SN1") == []


def test_window_from_strings_treats_bare_end_date_as_whole_day():
    window = DateWindow.from_strings("2024-01-01", "2024-01-31")

    assert window.start == utc(2024, 1, 1)
    assert window.contains(utc(2024, 1, 31, 23, 59, 59))
    assert not window.contains(utc(2024, 2, 1))


def test_window_from_strings_blank_values_are_open():
    assert DateWindow.from_strings("", None) == DateWindow()


def test_window_from_strings_rejects_garbage():
    with pytest.raises(ValueError):
        DateWindow.from_strings("soon", None)
