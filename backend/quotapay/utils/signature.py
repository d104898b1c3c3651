"""支付网关签名工具

支付宝 RSA2（PKCS#1 v1.5 + SHA256）与微信支付 v2 MD5 签名。
两者共用同一套待签名串规则：去掉排除字段与空值，按 key 的字节序排序后以 k=v&k=v 拼接。
"""
from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
from collections.abc import Iterable, Mapping
from typing import cast

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPrivateKey, RSAPublicKey
from cryptography.hazmat.primitives.serialization import (
    load_der_private_key,
    load_der_public_key,
    load_pem_private_key,
    load_pem_public_key,
)

from ..services.payment_errors import KeyConfigError

ALIPAY_SIGN_EXCLUDE = frozenset({"sign"})
ALIPAY_VERIFY_EXCLUDE = frozenset({"sign", "sign_type"})
WECHAT_SIGN_EXCLUDE = frozenset({"sign"})

ParamsLike = Mapping[str, object] | Iterable[tuple[str, object]]


def _iter_pairs(params: ParamsLike) -> Iterable[tuple[str, object]]:
    if isinstance(params, Mapping):
        return cast(Mapping[str, object], params).items()
    return params


def canonical_string(params: ParamsLike, exclude: Iterable[str] = ()) -> str:
    """构造待签名串"""
    excluded = set(exclude)
    items: list[tuple[str, str]] = []
    for k, v in _iter_pairs(params):
        key = str(k)
        if key in excluded or v is None:
            continue
        s = str(v)
        if s == "":
            continue
        items.append((key, s))
    items.sort(key=lambda x: x[0].encode("utf-8"))
    return "&".join([f"{k}={v}" for k, v in items])


def normalize_pem(value: str) -> str:
    if not value:
        return ""
    return value.strip().replace("\\n", "\n")


def _b64_body(value: str) -> bytes:
    compact = "".join(value.split())
    try:
        return base64.b64decode(compact, validate=True)
    except (binascii.Error, ValueError) as e:
        raise KeyConfigError(f"密钥不是合法的 base64: {e}") from e


def load_private_key(raw: str) -> RSAPrivateKey:
    """解析 RSA 私钥，支持 PEM（PKCS#1 / PKCS#8）以及无头尾的 base64 DER"""
    text = normalize_pem(raw)
    if not text:
        raise KeyConfigError("私钥为空")
    try:
        if "-----BEGIN" in text:
            key = load_pem_private_key(text.encode("utf-8"), password=None)
        else:
            key = load_der_private_key(_b64_body(text), password=None)
    except KeyConfigError:
        raise
    except (ValueError, TypeError) as e:
        raise KeyConfigError(f"私钥解析失败: {e}") from e
    if not isinstance(key, RSAPrivateKey):
        raise KeyConfigError("私钥不是 RSA 密钥")
    return key


def load_public_key(raw: str) -> RSAPublicKey:
    """解析 RSA 公钥，支持 PEM 与 base64 DER（SubjectPublicKeyInfo / PKCS#1）"""
    text = normalize_pem(raw)
    if not text:
        raise KeyConfigError("公钥为空")
    try:
        if "-----BEGIN" in text:
            key = load_pem_public_key(text.encode("utf-8"))
        else:
            key = load_der_public_key(_b64_body(text))
    except KeyConfigError:
        raise
    except (ValueError, TypeError) as e:
        raise KeyConfigError(f"公钥解析失败: {e}") from e
    if not isinstance(key, RSAPublicKey):
        raise KeyConfigError("公钥不是 RSA 密钥")
    return key


class AlipaySigner:
    """支付宝 RSA2 签名/验签

    密钥在构造时解析，配置错误会在任何网络请求或写库之前以 KeyConfigError 暴露。
    """

    def __init__(self, private_key: str, public_key: str | None = None):
        self._private_key = load_private_key(private_key)
        self._public_key = load_public_key(public_key) if public_key else None

    @property
    def can_verify(self) -> bool:
        return self._public_key is not None

    def sign(self, params: ParamsLike) -> str:
        content = canonical_string(params, ALIPAY_SIGN_EXCLUDE)
        signature = self._private_key.sign(
            content.encode("utf-8"),
            padding.PKCS1v15(),
            hashes.SHA256(),
        )
        return base64.b64encode(signature).decode("utf-8")

    def verify(self, params: Mapping[str, str], exclude: Iterable[str] = ALIPAY_VERIFY_EXCLUDE) -> bool:
        if self._public_key is None:
            return False
        sign = params.get("sign")
        if not sign:
            return False
        try:
            signature = base64.b64decode(sign)
        except (binascii.Error, ValueError):
            return False

        content = canonical_string(params, exclude)
        try:
            self._public_key.verify(
                signature,
                content.encode("utf-8"),
                padding.PKCS1v15(),
                hashes.SHA256(),
            )
            return True
        except InvalidSignature:
            return False


def wechat_sign(params: ParamsLike, key: str) -> str:
    """微信支付 v2 签名：MD5(待签名串 + &key=商户密钥) 转大写"""
    content = canonical_string(params, WECHAT_SIGN_EXCLUDE)
    raw = f"{content}&key={key}".encode("utf-8")
    return hashlib.md5(raw).hexdigest().upper()


def wechat_verify(params: Mapping[str, str], key: str) -> bool:
    sign = str(params.get("sign") or "").strip().upper()
    if not sign:
        return False
    expected = wechat_sign(params, key)
    return hmac.compare_digest(expected, sign)
