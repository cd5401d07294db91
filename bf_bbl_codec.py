"""
Betaflight Blackbox Codec: binary primitives
============================================
Low-level readers for the blackbox binary encoding: variable-byte integers,
ZigZag signed values, the sign-extended NEG_14BIT field, the grouped tag
encodings (TAG8_8SVB, TAG2_3S32, TAG2_3SVariable, TAG8_4S16) and the
bit-level Elias delta/gamma codes.

Every reader advances the cursor by exactly the bytes it consumes. Reading
past the end of the buffer raises IndexError("EOF"); the frame decoder
treats that as a failed frame and never emits it.
"""

# ─── Byte Cursor ─────────────────────────────────────────────────────────────

class ByteCursor:
    """Read position over an immutable byte buffer."""

    def __init__(self, buf, pos=0, end=None):
        self.buf = bytes(buf)
        self.pos = pos
        self.end = len(self.buf) if end is None else end

    @property
    def eof(self):
        return self.pos >= self.end

    @property
    def remaining(self):
        return self.end - self.pos

    def read_byte(self):
        if self.pos >= self.end:
            raise IndexError("EOF")
        b = self.buf[self.pos]
        self.pos += 1
        return b

    def peek_byte(self):
        """Next byte without consuming it, or -1 at end of buffer."""
        if self.pos >= self.end:
            return -1
        return self.buf[self.pos]

    def read_bytes(self, n):
        """Up to n raw bytes (short read at end of buffer)."""
        stop = min(self.pos + n, self.end)
        chunk = self.buf[self.pos:stop]
        self.pos = stop
        return chunk

    def read_line(self):
        """Text line terminated by \\n with any trailing \\r stripped, or None at EOF."""
        if self.eof:
            return None
        start = self.pos
        nl = self.buf.find(b"\n", start, self.end)
        stop = self.end if nl == -1 else nl
        self.pos = self.end if nl == -1 else nl + 1
        line = self.buf[start:stop]
        if line.endswith(b"\r"):
            line = line[:-1]
        return line.decode("latin-1")

    # ─── Variable-byte integers ──────────────────────────────────────────

    def read_unsigned_vb(self):
        """Little-endian base-128 integer, 7 bits per byte, top bit = more follow."""
        result, shift = 0, 0
        for _ in range(5):
            b = self.read_byte()
            result |= (b & 0x7F) << shift
            if not (b & 0x80):
                return result & 0xFFFFFFFF
            shift += 7
        # Corrupt run of continuation bytes: swallow the rest of it
        while self.pos < self.end and self.buf[self.pos] & 0x80:
            self.pos += 1
        if self.pos < self.end:
            self.pos += 1
        return result & 0xFFFFFFFF

    def read_signed_vb(self):
        return zigzag_decode(self.read_unsigned_vb())

    def read_neg_14bit(self):
        """Unsigned VB sign-extended from 14 bits, then negated."""
        value = self.read_unsigned_vb()
        if value & 0x2000:
            value = sign_extend(value & 0x3FFF, 14)
        return -value


def zigzag_decode(u):
    """0→0, 1→-1, 2→1, 3→-2, ..."""
    return (u >> 1) ^ -(u & 1)


def sign_extend(value, bits):
    mask = 1 << (bits - 1)
    value &= (1 << bits) - 1
    return (value ^ mask) - mask


# ─── Tagged multi-field decoders ────────────────────────────────────────────

def read_tag8_8svb(cursor, count):
    """TAG8_8SVB: up to 8 signed VBs behind a presence bitmask.

    A group of one field has no header byte at all; it is a bare signed VB.
    Otherwise bit i of the header (LSB first) says whether field i carries a
    signed VB; clear bits decode as 0 and consume nothing.
    """
    if count == 1:
        return [cursor.read_signed_vb()]
    header = cursor.read_byte()
    values = [0] * count
    for i in range(count):
        if header & 0x01:
            values[i] = cursor.read_signed_vb()
        header >>= 1
    return values


def _read_sized_le(cursor, size):
    # size selector: 0=8 bit, 1=16 bit, 2=24 bit, 3=32 bit, little-endian
    n = size + 1
    v = 0
    for i in range(n):
        v |= cursor.read_byte() << (8 * i)
    return sign_extend(v, 8 * n)


def read_tag2_3s32(cursor):
    """TAG2_3S32: top 2 bits of the lead byte pick the width of all 3 values."""
    lead = cursor.read_byte()
    selector = lead >> 6
    if selector == 0:
        # 3 × 2-bit, packed in the lead byte
        return [sign_extend(lead >> 4, 2), sign_extend(lead >> 2, 2), sign_extend(lead, 2)]
    elif selector == 1:
        # 3 × 4-bit: low nibble of lead + one more byte
        b = cursor.read_byte()
        return [sign_extend(lead, 4), sign_extend(b >> 4, 4), sign_extend(b, 4)]
    elif selector == 2:
        # 3 × 6-bit: low 6 bits of lead + two more bytes
        b1 = cursor.read_byte()
        b2 = cursor.read_byte()
        return [sign_extend(lead, 6), sign_extend(b1, 6), sign_extend(b2, 6)]
    return _read_per_field_sizes(cursor, lead)


def _read_per_field_sizes(cursor, lead):
    values = []
    for _ in range(3):
        values.append(_read_sized_le(cursor, lead & 0x03))
        lead >>= 2
    return values


def read_tag2_3svariable(cursor):
    """TAG2_3SVariable: like TAG2_3S32 but with 5-5-4 and 8-7-7 bit layouts."""
    lead = cursor.read_byte()
    selector = lead >> 6
    if selector == 0:
        return [sign_extend(lead >> 4, 2), sign_extend(lead >> 2, 2), sign_extend(lead, 2)]
    elif selector == 1:
        b2 = cursor.read_byte()
        return [
            sign_extend((lead & 0x3E) >> 1, 5),
            sign_extend(((lead & 0x01) << 4) | ((b2 & 0xF0) >> 4), 5),
            sign_extend(b2 & 0x0F, 4),
        ]
    elif selector == 2:
        b2 = cursor.read_byte()
        b3 = cursor.read_byte()
        return [
            sign_extend(((lead & 0x3F) << 2) | ((b2 & 0xC0) >> 6), 8),
            sign_extend(((b2 & 0x3F) << 1) | ((b3 & 0x80) >> 7), 7),
            sign_extend(b3 & 0x7F, 7),
        ]
    return _read_per_field_sizes(cursor, lead)


def read_tag8_4s16(cursor):
    """TAG8_4S16 v2: 2-bit width selector per field (0/4/8/16 bit), LSB first.

    Nibbles are buffered: the first 4-bit value takes the high nibble of a
    fresh byte, the next one the low nibble. Wider values read while a nibble
    is pending straddle the byte boundary. 16-bit values are big-endian.
    The nibble buffer starts empty for every group.
    """
    selector = cursor.read_byte()
    values = [0, 0, 0, 0]
    have_nibble = False
    buf = 0
    for i in range(4):
        width = selector & 0x03
        selector >>= 2
        if width == 1:
            if not have_nibble:
                buf = cursor.read_byte()
                values[i] = sign_extend(buf >> 4, 4)
                have_nibble = True
            else:
                values[i] = sign_extend(buf & 0x0F, 4)
                have_nibble = False
        elif width == 2:
            if not have_nibble:
                values[i] = sign_extend(cursor.read_byte(), 8)
            else:
                nxt = cursor.read_byte()
                values[i] = sign_extend(((buf & 0x0F) << 4) | (nxt >> 4), 8)
                buf = nxt
        elif width == 3:
            if not have_nibble:
                hi = cursor.read_byte()
                lo = cursor.read_byte()
                values[i] = sign_extend((hi << 8) | lo, 16)
            else:
                b1 = cursor.read_byte()
                b2 = cursor.read_byte()
                values[i] = sign_extend(((buf & 0x0F) << 12) | (b1 << 4) | (b2 >> 4), 16)
                buf = b2
    return values


# ─── Bit-level codes ─────────────────────────────────────────────────────────

class BitReader:
    """MSB-first bit reader on top of a ByteCursor."""

    def __init__(self, cursor):
        self.cursor = cursor
        self._byte = 0
        self._bits_left = 0

    def read_bit(self):
        if self._bits_left == 0:
            self._byte = self.cursor.read_byte()
            self._bits_left = 8
        self._bits_left -= 1
        return (self._byte >> self._bits_left) & 1

    def read_bits(self, n):
        result = 0
        for _ in range(n):
            result = (result << 1) | self.read_bit()
        return result

    def byte_align(self):
        """Drop any buffered bits; the cursor already sits on the next byte."""
        self._bits_left = 0


def _leading_zeros(bits):
    count = 0
    while bits.read_bit() == 0:
        count += 1
        if count > 31:
            return None
    return count


def read_elias_delta_unsigned(bits):
    zeros = _leading_zeros(bits)
    if zeros is None:
        return 0  # corrupt
    length = 1
    for _ in range(zeros):
        length = (length << 1) | bits.read_bit()
    value = 1
    for _ in range(length - 1):
        value = (value << 1) | bits.read_bit()
    return value - 1


def read_elias_delta_signed(bits):
    return zigzag_decode(read_elias_delta_unsigned(bits))


def read_elias_gamma_unsigned(bits):
    zeros = _leading_zeros(bits)
    if zeros is None:
        return 0
    value = 1
    for _ in range(zeros):
        value = (value << 1) | bits.read_bit()
    return value - 1


def read_elias_gamma_signed(bits):
    return zigzag_decode(read_elias_gamma_unsigned(bits))
