import pytest

from bf_bbl_codec import (
    BitReader, ByteCursor, read_elias_delta_signed, read_elias_delta_unsigned,
    read_elias_gamma_signed, read_elias_gamma_unsigned, read_tag2_3s32, read_tag2_3svariable,
    read_tag8_4s16, read_tag8_8svb, sign_extend, zigzag_decode,
)

from conftest import svb, uvb


def test_unsigned_vb_multi_byte():
    c = ByteCursor(bytes([0xAC, 0x02, 0x7F]))
    assert c.read_unsigned_vb() == 300
    assert c.pos == 2
    assert c.read_unsigned_vb() == 127
    assert c.eof


def test_zigzag_mapping():
    assert [zigzag_decode(u) for u in range(5)] == [0, -1, 1, -2, 2]
    assert zigzag_decode(0xFFFFFFFE) == 2147483647
    assert zigzag_decode(0xFFFFFFFF) == -2147483648


def test_signed_vb_reads_encoder_output():
    data = svb(-1) + svb(1234) + svb(-70000)
    c = ByteCursor(data)
    assert [c.read_signed_vb() for _ in range(3)] == [-1, 1234, -70000]
    assert c.pos == len(data)


def test_read_past_end_raises():
    c = ByteCursor(b"\x80")
    with pytest.raises(IndexError):
        c.read_unsigned_vb()


def test_cursor_end_bound():
    c = ByteCursor(b"abcdef", 0, 2)
    assert c.read_bytes(10) == b"ab"
    assert c.eof
    assert c.peek_byte() == -1


def test_read_line_strips_cr():
    c = ByteCursor(b"H a:1\r\nH b:2\nrest")
    assert c.read_line() == "H a:1"
    assert c.read_line() == "H b:2"
    assert c.read_line() == "rest"
    assert c.read_line() is None


def test_neg_14bit():
    assert ByteCursor(uvb(5)).read_neg_14bit() == -5
    # 0x3FFF is -1 in 14 bits, negated
    assert ByteCursor(uvb(0x3FFF)).read_neg_14bit() == 1


def test_sign_extend():
    assert sign_extend(0xF, 4) == -1
    assert sign_extend(0x7, 4) == 7
    assert sign_extend(0x80, 8) == -128


def test_tag8_8svb_single_field_has_no_header():
    c = ByteCursor(svb(5))
    assert read_tag8_8svb(c, 1) == [5]
    assert c.pos == 1


def test_tag8_8svb_bitmask():
    c = ByteCursor(bytes([0b101]) + svb(3) + svb(-2))
    assert read_tag8_8svb(c, 3) == [3, 0, -2]
    assert c.pos == 3


def test_tag2_3s32_two_bit():
    c = ByteCursor(bytes([0b00011110]))
    assert read_tag2_3s32(c) == [1, -1, -2]
    assert c.pos == 1


def test_tag2_3s32_four_bit():
    c = ByteCursor(bytes([0x4F, 0x72]))
    assert read_tag2_3s32(c) == [-1, 7, 2]


def test_tag2_3s32_per_field_sizes():
    # field 0: 8 bit, field 1: 16 bit, field 2: 8 bit
    c = ByteCursor(bytes([0xC4, 0xFF, 0x34, 0x12, 0x05]))
    assert read_tag2_3s32(c) == [-1, 0x1234, 5]
    assert c.pos == 5


def test_tag2_3svariable_554():
    # 5-5-4: lead 01 00010 1, next byte 0001 1111
    c = ByteCursor(bytes([0b01000101, 0b00011111]))
    assert read_tag2_3svariable(c) == [2, 17 - 32, -1]


def test_tag2_3svariable_877():
    # 8-7-7: lead 10 111111, 01 000010, 1 1000000
    c = ByteCursor(bytes([0b10111111, 0b01000010, 0b11000000]))
    assert read_tag2_3svariable(c) == [-3, 5, -64]
    assert c.eof


def test_tag8_4s16_nibbles_and_byte():
    c = ByteCursor(bytes([0x25, 0x3F, 0x80]))
    assert read_tag8_4s16(c) == [3, -1, -128, 0]
    assert c.pos == 3


def test_tag8_4s16_straddles_byte_boundary():
    # nibble, then a 16-bit value that starts on the pending low nibble
    c = ByteCursor(bytes([0x0D, 0x21, 0x23, 0x45]))
    assert read_tag8_4s16(c) == [2, 0x1234, 0, 0]
    assert c.pos == 4


def test_elias_gamma_unsigned():
    bits = BitReader(ByteCursor(bytes([0b00100000])))
    assert read_elias_gamma_unsigned(bits) == 3


def test_elias_gamma_signed():
    # "010" → 1 → zigzag -1
    bits = BitReader(ByteCursor(bytes([0b01000000])))
    assert read_elias_gamma_signed(bits) == -1


def test_elias_delta_unsigned():
    bits = BitReader(ByteCursor(bytes([0b01101000])))
    assert read_elias_delta_unsigned(bits) == 4
    bits = BitReader(ByteCursor(bytes([0b10000000])))
    assert read_elias_delta_unsigned(bits) == 0


def test_elias_delta_signed():
    # "01110" → 5 → zigzag -3
    bits = BitReader(ByteCursor(bytes([0b01110000])))
    assert read_elias_delta_signed(bits) == -3


def test_bit_reader_byte_align():
    c = ByteCursor(bytes([0b10000000, 0xAB]))
    bits = BitReader(c)
    assert bits.read_bit() == 1
    bits.byte_align()
    assert c.read_byte() == 0xAB
