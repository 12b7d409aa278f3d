"""Tests for single-column voting."""

import pytest

from bin_voter import fast_check, vote_byte


@pytest.mark.parametrize("n", [1, 2, 3, 4, 7])
@pytest.mark.parametrize("value", [0x00, 0x5A, 0xFF])
def test_identical_column_is_returned_untouched(n, value):
    assert vote_byte([value] * n) == (value, 0)


def test_single_byte_takes_fast_path():
    assert fast_check([0x42])
    assert vote_byte([0x42]) == (0x42, 0)


def test_fast_check_detects_any_difference():
    assert fast_check(b"\x10\x10\x10")
    assert not fast_check(b"\x10\x10\x11")
    assert not fast_check([0x11, 0x10, 0x10])


def test_single_flipped_bit_is_outvoted():
    assert vote_byte([0b10000000, 0b10000000, 0b00000000]) == (0b10000000, 1)


def test_even_split_resolves_to_zero_and_counts_every_bit():
    assert vote_byte([0xFF, 0x00]) == (0x00, 8)


def test_even_split_on_one_bit_only():
    # bit0 is 2 of 4, bit1 is 3 of 4
    byte, corrected = vote_byte([0b11, 0b11, 0b10, 0b00])
    assert byte == 0b10
    assert corrected == 2


def test_bits_voted_independently():
    # every input is wrong somewhere, yet each bit has a majority
    column = [0b0110, 0b0101, 0b0011]
    byte, corrected = vote_byte(column)
    assert byte == 0b0111
    assert corrected == 3


def test_corrected_counts_disagreement_not_flips():
    # the lone 1 loses, the bit still counts as corrected
    byte, corrected = vote_byte([0x00, 0x00, 0x00, 0x00, 0x01])
    assert byte == 0x00
    assert corrected == 1


def test_accepts_bytes_column():
    assert vote_byte(b"\x0f\x0f\xf0") == (0x0F, 8)


def test_matches_bit_counting_rule():
    columns = [
        [0x00, 0xFF, 0x0F],
        [0xAA, 0x55, 0xAA, 0x55],
        [0x80, 0x01, 0x81, 0x80, 0x01],
        [0x12, 0x34, 0x56, 0x78, 0x9A, 0xBC],
    ]
    for column in columns:
        n = len(column)
        expected_byte = 0
        expected_corrected = 0
        for bit in range(8):
            ones = sum((b >> bit) & 1 for b in column)
            if ones * 2 > n:
                expected_byte |= 1 << bit
            if 0 < ones < n:
                expected_corrected += 1
        assert vote_byte(column) == (expected_byte, expected_corrected)
        assert 0 <= expected_corrected <= 8


class CountingColumn(list):
    """Column that records how many times it is iterated."""

    def __init__(self, values):
        super().__init__(values)
        self.passes = 0

    def __iter__(self):
        self.passes += 1
        return super().__iter__()


def test_unanimous_column_skips_bitwise_pass():
    column = CountingColumn([0xA5] * 5)
    assert vote_byte(column) == (0xA5, 0)
    assert column.passes == 1


def test_disagreeing_column_counts_every_bit():
    column = CountingColumn([0xA5, 0xA5, 0xA4])
    assert vote_byte(column) == (0xA5, 1)
    assert column.passes == 1 + 8
