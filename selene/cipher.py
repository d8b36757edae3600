"""
AES-128-CBC segment decryption.
"""

from Crypto.Cipher import AES
from Crypto.Util.Padding import pad, unpad

from selene.errors import DecryptError, InvalidCiphertextLength, InvalidPadding
from selene.manifest_resolver import VideoManifest

BLOCK_SIZE = AES.block_size


class CipherContext:
    """
    Decrypts segments that were all encrypted with the same key and IV.

    Every segment of a lesson is an independent CBC unit starting from the
    IV announced in the media playlist, so no chaining state is carried
    from one decrypt call to the next.
    """

    def __init__(self, key: bytes, iv: bytes):
        if len(key) != 16:
            raise DecryptError(f"Invalid key length: {len(key)} bytes (expected 16)")
        if len(iv) != BLOCK_SIZE:
            raise DecryptError(f"Invalid IV length: {len(iv)} bytes (expected {BLOCK_SIZE})")
        self.key = bytes(key)
        self.iv = bytes(iv)

    @classmethod
    def from_manifest(cls, manifest: VideoManifest) -> 'CipherContext':
        return cls(manifest.key, manifest.iv)

    def decrypt(self, buffer: bytearray) -> memoryview:
        """
        Decrypt buffer in place and return a view of the unpadded plaintext.
        """
        if not buffer or len(buffer) % BLOCK_SIZE:
            raise InvalidCiphertextLength(
                f"Ciphertext length {len(buffer)} is not a positive multiple of {BLOCK_SIZE}"
            )

        view = memoryview(buffer)
        cipher = AES.new(self.key, AES.MODE_CBC, self.iv)
        cipher.decrypt(view, output=view)

        try:
            last_block = unpad(bytes(view[-BLOCK_SIZE:]), BLOCK_SIZE)
        except ValueError as e:
            raise InvalidPadding(f"could not decrypt blob: {e}") from e

        padding_length = BLOCK_SIZE - len(last_block)
        return view[:len(view) - padding_length]

    def encrypt(self, plaintext: bytes) -> bytes:
        cipher = AES.new(self.key, AES.MODE_CBC, self.iv)
        return cipher.encrypt(pad(plaintext, BLOCK_SIZE))
