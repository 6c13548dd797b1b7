"""Callback payload encryption used by the WeCom server API.

Layout of a decrypted buffer::

    random(16) || length(4, big-endian) || message(length) || corp_id

The buffer is padded to a multiple of 32 bytes with a PKCS#7-style
scheme (pad byte == pad length, 1..32) before AES-256-CBC encryption.
The IV is the first 16 bytes of the key.
"""

from __future__ import annotations

import base64
import binascii
import os
import struct

from Crypto.Cipher import AES

from wecom_bridge.domain.errors import DecryptError


PAD_BLOCK_SIZE = 32
_RANDOM_PREFIX_BYTES = 16
_LENGTH_BYTES = 4


def decode_aes_key(encoding_aes_key: str) -> bytes:
    try:
        key = base64.b64decode(f"{encoding_aes_key}=")
    except (binascii.Error, ValueError) as exc:
        raise DecryptError(f"Invalid AES key encoding: {exc}") from exc
    if len(key) != 32:
        raise DecryptError(f"Invalid AES key length: {len(key)}, expected 32")
    return key


def strip_padding(buffer: bytes) -> bytes:
    if not buffer:
        raise DecryptError("Invalid padding: empty buffer")
    pad_length = buffer[-1]
    if pad_length < 1 or pad_length > PAD_BLOCK_SIZE or pad_length > len(buffer):
        raise DecryptError("Invalid padding")
    if buffer[-pad_length:] != bytes([pad_length]) * pad_length:
        raise DecryptError("Invalid padding")
    return buffer[:-pad_length]


def apply_padding(buffer: bytes) -> bytes:
    pad_length = PAD_BLOCK_SIZE - (len(buffer) % PAD_BLOCK_SIZE)
    return buffer + bytes([pad_length]) * pad_length


def _aes(key: bytes):
    return AES.new(key, AES.MODE_CBC, key[:16])


def decrypt_message(encoding_aes_key: str, cipher_text: str, corp_id: str) -> str:
    key = decode_aes_key(encoding_aes_key)
    try:
        encrypted = base64.b64decode(cipher_text)
    except (binascii.Error, ValueError) as exc:
        raise DecryptError(f"Invalid ciphertext encoding: {exc}") from exc
    if not encrypted or len(encrypted) % AES.block_size != 0:
        raise DecryptError("Ciphertext length is not a multiple of the AES block size")

    plain = strip_padding(_aes(key).decrypt(encrypted))
    header_size = _RANDOM_PREFIX_BYTES + _LENGTH_BYTES
    if len(plain) < header_size:
        raise DecryptError("Decrypted message too short")

    (message_length,) = struct.unpack(">I", plain[_RANDOM_PREFIX_BYTES:header_size])
    if header_size + message_length > len(plain):
        raise DecryptError("Invalid message length")

    message = plain[header_size : header_size + message_length]
    received_corp_id = plain[header_size + message_length :].decode("utf-8", errors="replace")
    if received_corp_id != corp_id:
        raise DecryptError(f"CorpId mismatch: expected {corp_id}, got {received_corp_id}")

    try:
        return message.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise DecryptError("Decrypted message is not valid UTF-8") from exc


def encrypt_message(
    encoding_aes_key: str,
    plain_text: str,
    corp_id: str,
    random_prefix: bytes | None = None,
) -> str:
    key = decode_aes_key(encoding_aes_key)
    prefix = random_prefix if random_prefix is not None else os.urandom(_RANDOM_PREFIX_BYTES)
    if len(prefix) != _RANDOM_PREFIX_BYTES:
        raise ValueError("random_prefix must be 16 bytes")
    message = plain_text.encode("utf-8")
    buffer = prefix + struct.pack(">I", len(message)) + message + corp_id.encode("utf-8")
    return base64.b64encode(_aes(key).encrypt(apply_padding(buffer))).decode("ascii")
