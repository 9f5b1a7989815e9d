"""
密钥解析与解密测试
"""

import pytest
from Crypto.Cipher import AES

from hls2mp4.core.crypto import (
    AESDecryptor,
    EncryptionInfo,
    KeyContext,
    KeyResolver,
    generate_iv_from_sequence,
    parse_iv_string,
)
from hls2mp4.core.errors import DecryptError, EncryptionKeyError
from hls2mp4.core.models import MediaPlaylist, Segment

from conftest import FakeTransport, encrypt

KEY = bytes(range(16))
KEY_URI = "https://cdn.example.com/key.bin"


def test_iv_from_sequence_is_big_endian():
    assert generate_iv_from_sequence(0) == b'\x00' * 16
    assert generate_iv_from_sequence(258) == b'\x00' * 14 + b'\x01\x02'


def test_parse_iv_string():
    assert parse_iv_string('0x0000000000000000000000000000000F') == b'\x00' * 15 + b'\x0f'
    assert parse_iv_string('0X1') == b'\x00' * 15 + b'\x01'
    with pytest.raises(ValueError):
        parse_iv_string('0x' + '00' * 17)


def test_decrypt_round_trip():
    """加密已知明文后经过解密阶段得到原文"""
    plaintext = b'\x47' + b'transport stream payload' * 20
    iv = bytes(range(16, 32))
    segment = Segment(index=0, uri="seg0.ts",
                      key=EncryptionInfo(method="AES-128", uri=KEY_URI, iv=iv))
    decryptor = AESDecryptor(KeyContext(segment.key, KEY))

    assert decryptor.decrypt_segment(segment, encrypt(plaintext, KEY, iv)) == plaintext


def test_decrypt_uses_sequence_iv_without_explicit_iv():
    plaintext = b'segment five'
    segment = Segment(index=2, uri="seg.ts", sequence=5,
                      key=EncryptionInfo(method="AES-128", uri=KEY_URI))
    context = KeyContext(segment.key, KEY)

    ciphertext = encrypt(plaintext, KEY, generate_iv_from_sequence(5))
    assert AESDecryptor(context).decrypt_segment(segment, ciphertext) == plaintext


def test_unencrypted_segment_passes_through():
    segment = Segment(index=0, uri="seg.ts")
    assert AESDecryptor().decrypt_segment(segment, b'raw bytes') == b'raw bytes'


def test_truncated_ciphertext():
    segment = Segment(index=3, uri="seg.ts",
                      key=EncryptionInfo(method="AES-128", uri=KEY_URI, iv=b'\x00' * 16))
    ciphertext = encrypt(b'x' * 40, KEY, b'\x00' * 16)

    with pytest.raises(DecryptError) as exc_info:
        AESDecryptor(KeyContext(segment.key, KEY)).decrypt_segment(segment, ciphertext[:-5])
    assert exc_info.value.index == 3


def test_bad_padding():
    iv = b'\x00' * 16
    # 明文最后一个字节为 0，不是合法的 PKCS7 填充
    ciphertext = AES.new(KEY, AES.MODE_CBC, iv).encrypt(b'\x00' * 32)
    with pytest.raises(DecryptError):
        AESDecryptor.decrypt(ciphertext, KEY, iv)


def test_check_keys_unencrypted():
    assert KeyResolver.check_keys([]) is None
    assert KeyResolver.check_keys([EncryptionInfo(method="NONE")]) is None


def test_check_keys_first_key_authoritative():
    first = EncryptionInfo(method="AES-128", uri=KEY_URI)
    same = EncryptionInfo(method="AES-128", uri=KEY_URI, iv=b'\x01' * 16)
    assert KeyResolver.check_keys([first, same]) is first


@pytest.mark.parametrize("keys", [
    [EncryptionInfo(method="SAMPLE-AES", uri=KEY_URI)],
    [EncryptionInfo(method="AES-128", uri=None)],
    [EncryptionInfo(method="AES-128", uri=KEY_URI),
     EncryptionInfo(method="AES-128", uri="https://cdn.example.com/key2.bin")],
    [EncryptionInfo(method="AES-128", uri=KEY_URI), EncryptionInfo(method="NONE")],
])
def test_check_keys_rejected(keys):
    with pytest.raises(EncryptionKeyError):
        KeyResolver.check_keys(keys)


def test_key_fetched_once():
    transport = FakeTransport({KEY_URI: KEY})
    resolver = KeyResolver(transport)
    info = EncryptionInfo(method="AES-128", uri=KEY_URI)
    playlist = MediaPlaylist(uri="index.m3u8", keys=[info, info])

    context = resolver.resolve(playlist)
    resolver.get_key(KEY_URI)

    assert context.key == KEY
    assert transport.attempts[KEY_URI] == 1


def test_key_unreachable():
    resolver = KeyResolver(FakeTransport())
    with pytest.raises(EncryptionKeyError):
        resolver.get_key(KEY_URI)


def test_key_wrong_length():
    resolver = KeyResolver(FakeTransport({KEY_URI: b'short'}))
    with pytest.raises(EncryptionKeyError):
        resolver.get_key(KEY_URI)
