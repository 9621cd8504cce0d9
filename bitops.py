from typing import Tuple


class EndOfStream(EOFError):
    """Raised when a read needs more bits than the stream has left."""


class BitReader:
    """Bit-level reader over a BCFZ compressed body.

    Bits are taken from each byte starting at the most significant bit.
    Multi-bit fields can be assembled in either order, see
    :meth:`read_uint_lsb_first` and :meth:`read_uint_msb_first`.

    :ivar data: Input data to read bits from.
    :type data: bytes
    :ivar pos: Index of the byte holding the next unread bit.
    :type pos: int
    :ivar bit_pos: Index of the next unread bit within ``data[pos]`` (0-7,
        0 being the most significant bit).
    :type bit_pos: int
    """

    def __init__(self, data: bytes):
        """Create a bit reader for the given input ``data``.

        :param data: Source data to read from.
        :type data: bytes
        :returns: None
        :rtype: None
        """
        self.data = data
        self.pos = 0
        self.bit_pos = 0

    @property
    def position(self) -> Tuple[int, int]:
        """Current cursor as ``(byte_index, bit_index)``.

        At the end of the stream this is ``(len(data), 0)``.
        """
        return self.pos, self.bit_pos

    @property
    def bits_read(self) -> int:
        """Total number of bits consumed so far."""
        return self.pos * 8 + self.bit_pos

    @property
    def bits_remaining(self) -> int:
        """Number of bits still available."""
        return len(self.data) * 8 - self.bits_read

    def at_zero_padding(self) -> bool:
        """Check whether only the zero-filled tail of the last byte is left.

        :returns: ``True`` if fewer than 8 bits remain and all of them are 0.
        :rtype: bool
        """
        if self.pos != len(self.data) - 1 or self.bit_pos == 0:
            return False
        mask = (1 << (8 - self.bit_pos)) - 1
        return self.data[self.pos] & mask == 0

    def read_bit(self) -> int:
        """Read the next bit.

        :returns: 0 or 1.
        :rtype: int
        :raises EndOfStream: If no bits remain.
        """
        if self.pos >= len(self.data):
            raise EndOfStream(
                f"Unexpected end of data at byte {self.pos}"
            )
        bit = (self.data[self.pos] >> (7 - self.bit_pos)) & 1
        self.bit_pos += 1
        if self.bit_pos == 8:
            self.bit_pos = 0
            self.pos += 1
        return bit

    def read_uint_lsb_first(self, nbits: int) -> int:
        """Read ``nbits`` bits, the first one read being the least significant.

        :param nbits: Number of bits to read.
        :type nbits: int
        :returns: The assembled unsigned integer.
        :rtype: int
        :raises EndOfStream: If the data ends before ``nbits`` bits are read.
        """
        result = 0
        for i in range(nbits):
            result |= self.read_bit() << i
        return result

    def read_uint_msb_first(self, nbits: int) -> int:
        """Read ``nbits`` bits, the first one read being the most significant.

        :param nbits: Number of bits to read.
        :type nbits: int
        :returns: The assembled unsigned integer.
        :rtype: int
        :raises EndOfStream: If the data ends before ``nbits`` bits are read.
        """
        result = 0
        for _ in range(nbits):
            result = (result << 1) | self.read_bit()
        return result

    def read_bytes(self, nbytes: int) -> bytes:
        """Read ``nbytes`` bytes, each assembled most significant bit first.

        The stream is not byte aligned, so every byte is read bit by bit
        from the current cursor.

        :param nbytes: Number of bytes to read.
        :type nbytes: int
        :returns: The next ``nbytes`` bytes in stream order.
        :rtype: bytes
        :raises EndOfStream: If the data ends before ``nbytes`` bytes are read.
        """
        if self.bits_remaining < nbytes * 8:
            raise EndOfStream(
                f"Need {nbytes} bytes at byte {self.pos}, "
                f"only {self.bits_remaining} bits left"
            )
        result = bytearray()
        for _ in range(nbytes):
            result.append(self.read_uint_msb_first(8))
        return bytes(result)
