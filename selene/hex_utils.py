"""
Hex decoding for IV attributes.
"""

import binascii

from selene.errors import InvalidHexEncoding


def decode_hex(value: str) -> bytes:
    """
    Decode a hex string, with or without a 0x prefix, into bytes.
    Pattern: 0xb87f84a4ced179cfc020624ade3d7f71
    """
    digits = value[2:] if value[:2].lower() == '0x' else value
    try:
        return binascii.unhexlify(digits)
    except (binascii.Error, ValueError) as e:
        raise InvalidHexEncoding(f"invalid hex string [{value}]: {e}") from e
