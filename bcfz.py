"""BCFZ decompression for GuitarPro 6 files.

A BCFZ body is a sequence of chunks, each introduced by a 1-bit flag:

- Flag 0: literal chunk
  - 2 bits (LSB first): index into :data:`LITERAL_BYTE_COUNTS`
  - the literal bytes, 8 bits each (MSB first)
- Flag 1: back-reference chunk
  - 4 bits (MSB first): word size ``w``
  - ``w`` bits (LSB first): offset back from the end of the output
  - ``w`` bits (LSB first): number of bytes to copy
"""
import enum
from typing import Callable, Optional, Tuple

from loguru import logger

from bitops import BitReader, EndOfStream

#: Number of literal bytes, indexed by the 2-bit selector.
LITERAL_BYTE_COUNTS = (0, 1, 2, 3)

WORD_SIZE_BITS = 4
LITERAL_SELECTOR_BITS = 2


class ErrorKind(enum.Enum):
    TRUNCATED_CHUNK = "truncated chunk"
    INVALID_BACKREFERENCE = "invalid back-reference"


class DecodeError(ValueError):
    """Fatal error in a BCFZ body.

    :ivar kind: What went wrong.
    :type kind: ErrorKind
    :ivar position: ``(byte_index, bit_index)`` where the failing chunk starts.
    :type position: Tuple[int, int]
    """

    def __init__(self, kind: ErrorKind, position: Tuple[int, int], detail=""):
        self.kind = kind
        self.position = position
        message = f"{kind.value} at byte {position[0]}, bit {position[1]}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class _Padding(Exception):
    """The stream ended inside the zero-filled tail of its last byte."""


class ChunkDecoder:
    """Rebuilds the original bytes from a BCFZ body one chunk at a time.

    A decoder instance holds no state between calls.
    """

    def decode(
        self,
        compressed: bytes,
        expected_length: int,
        on_progress: Optional[Callable[[int, int], None]] = None,
    ) -> bytes:
        """Decompress a BCFZ body.

        Decoding stops once the output holds ``expected_length`` bytes or
        the input ends at a chunk boundary, whichever comes first. The last
        chunk is always completed, so the result may be longer than
        ``expected_length``.

        :param compressed: Compressed body, starting at the first chunk flag.
        :type compressed: bytes
        :param expected_length: Declared size of the decompressed data.
        :type expected_length: int
        :param on_progress: Optional callback ``on_progress(done, total)``
            invoked after each chunk.
        :type on_progress: Optional[Callable[[int, int], None]]
        :returns: Decompressed data.
        :rtype: bytes
        :raises ValueError: If ``expected_length`` is negative.
        :raises DecodeError: If a chunk is truncated or refers to data
            before the start of the output.
        """
        if expected_length < 0:
            raise ValueError(f"Invalid expected length: {expected_length}")

        reader = BitReader(compressed)
        output = bytearray()
        logger.debug(
            f"BCFZ decode: {len(compressed)} compressed bytes, "
            f"expecting {expected_length}"
        )

        while len(output) < expected_length:
            start = reader.position
            padding = reader.at_zero_padding()
            try:
                flag = reader.read_uint_lsb_first(1)
            except EndOfStream:
                break

            try:
                if flag == 0:
                    self._read_literal_chunk(reader, output, padding)
                else:
                    self._read_backref_chunk(reader, output, start)
            except _Padding:
                logger.debug(
                    f"Ignoring trailing padding in byte {start[0]}"
                )
                break
            except EndOfStream as e:
                raise DecodeError(
                    ErrorKind.TRUNCATED_CHUNK, start, str(e)
                ) from e

            if on_progress is not None:
                on_progress(min(len(output), expected_length), expected_length)

        if len(output) < expected_length:
            logger.warning(
                f"BCFZ stream ended early: {len(output)} of "
                f"{expected_length} bytes"
            )
        logger.debug(
            f"BCFZ decoded {len(output)} bytes "
            f"from {reader.bits_read} bits"
        )
        return bytes(output)

    @staticmethod
    def _read_literal_chunk(
        reader: BitReader, output: bytearray, padding: bool
    ) -> None:
        try:
            selector = reader.read_uint_lsb_first(LITERAL_SELECTOR_BITS)
            length = LITERAL_BYTE_COUNTS[selector]
        except EndOfStream:
            if padding:
                raise _Padding()
            raise
        output.extend(reader.read_bytes(length))

    @staticmethod
    def _read_backref_chunk(
        reader: BitReader, output: bytearray, start: Tuple[int, int]
    ) -> None:
        word_size = reader.read_uint_msb_first(WORD_SIZE_BITS)
        offset = reader.read_uint_lsb_first(word_size)
        length = reader.read_uint_lsb_first(word_size)
        if offset == 0 or offset > len(output):
            raise DecodeError(
                ErrorKind.INVALID_BACKREFERENCE,
                start,
                f"offset {offset} with {len(output)} bytes of output",
            )
        # Byte by byte: the copy may read bytes it has just written.
        match_pos = len(output) - offset
        for _ in range(length):
            output.append(output[match_pos])
            match_pos += 1


def decode(
    compressed: bytes,
    expected_length: int,
    on_progress: Optional[Callable[[int, int], None]] = None,
) -> bytes:
    """Decompress a BCFZ body with a fresh :class:`ChunkDecoder`.

    See :meth:`ChunkDecoder.decode`.
    """
    return ChunkDecoder().decode(
        compressed, expected_length, on_progress=on_progress
    )
