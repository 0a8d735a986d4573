"""Helpers for ACP extension methods and `_meta` payloads."""

from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

# JSON-RPC 実装定義エラーの予約範囲
RESERVED_ERROR_RANGE = (-32099, -32000)


def is_valid_extension_method(method: str) -> bool:
    """拡張メソッド名として有効か（"_" で始まるか）."""
    return method.startswith("_")


def extension_method_name(vendor_domain: str, method: str) -> str:
    """
    ベンダーで名前空間を付けた拡張メソッド名を作成する.

    Example:
        extension_method_name("zed.dev", "workspace/buffers")
        -> "_zed.dev/workspace/buffers"
    """
    return f"_{vendor_domain}/{method}"


def is_implementation_error(code: int) -> bool:
    """エラーコードが実装定義の予約範囲にあるか."""
    low, high = RESERVED_ERROR_RANGE
    return low <= code <= high


@dataclass(frozen=True)
class ExtensionMeta:
    """`_meta` の読み取り専用ラッパー."""

    data: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_wire(cls, raw: Any) -> ExtensionMeta:
        """`_meta` の値から作成する（辞書以外は空）."""
        return cls(dict(raw) if isinstance(raw, dict) else {})

    def __bool__(self) -> bool:
        return bool(self.data)

    def __getitem__(self, key: str) -> Any:
        return self.data[key]

    def __contains__(self, key: object) -> bool:
        return key in self.data

    def get(self, key: str, default: Any = None) -> Any:
        """キーの値を返す."""
        return self.data.get(key, default)

    def vendor_data(self, vendor_domain: str) -> dict[str, Any] | None:
        """ベンダーの名前空間のデータを返す."""
        value = self.data.get(vendor_domain)
        return value if isinstance(value, dict) else None

    def with_values(self, **values: Any) -> ExtensionMeta:
        """値を追加した新しい ExtensionMeta を返す."""
        return ExtensionMeta({**self.data, **values})

    def to_dict(self) -> dict[str, Any]:
        """辞書のコピーを返す."""
        return dict(self.data)


@dataclass(frozen=True)
class ExtensionCapabilities:
    """エージェントが `_meta` で通知するベンダー拡張の機能."""

    vendors: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_wire(cls, raw: Any) -> ExtensionCapabilities:
        """agentCapabilities の `_meta` から作成する."""
        return cls(dict(raw) if isinstance(raw, dict) else {})

    def has_vendor(self, vendor_domain: str) -> bool:
        """ベンダーの拡張があるか."""
        return vendor_domain in self.vendors

    def vendor_capabilities(self, vendor_domain: str) -> dict[str, Any] | None:
        """ベンダーの機能マップを返す."""
        value = self.vendors.get(vendor_domain)
        return value if isinstance(value, dict) else None

    def supports(self, vendor_domain: str, capability: str) -> bool:
        """ベンダーが機能をサポートするか（false / null 以外なら真）."""
        caps = self.vendor_capabilities(vendor_domain)
        if caps is None:
            return False
        value = caps.get(capability)
        return value is not None and value is not False


@dataclass(frozen=True)
class ExtensionParams:
    """
    拡張メソッドのパラメータ.

    各メソッドは元の値を変更せず、新しい ExtensionParams を返す。
    """

    params: MappingProxyType[str, Any] = field(
        default_factory=lambda: MappingProxyType({})
    )

    @classmethod
    def of(cls, values: dict[str, Any] | None = None) -> ExtensionParams:
        """辞書から作成する."""
        return cls(MappingProxyType(dict(values or {})))

    def set(self, key: str, value: Any) -> ExtensionParams:
        """値を設定した新しい ExtensionParams を返す."""
        return ExtensionParams.of({**self.params, key: value})

    def set_all(self, values: dict[str, Any]) -> ExtensionParams:
        """複数の値を設定した新しい ExtensionParams を返す."""
        return ExtensionParams.of({**self.params, **values})

    def with_meta(self, meta: ExtensionMeta) -> ExtensionParams:
        """`_meta` を設定した新しい ExtensionParams を返す（空なら変更しない）."""
        if not meta:
            return self
        return self.set("_meta", meta.to_dict())

    def to_dict(self) -> dict[str, Any]:
        """ワイヤ形式の辞書を返す."""
        return dict(self.params)


@dataclass(frozen=True)
class ExtensionResponse:
    """拡張メソッドの応答."""

    raw: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_wire(cls, result: Any) -> ExtensionResponse:
        """応答の result から作成する（辞書以外は空）."""
        return cls(dict(result) if isinstance(result, dict) else {})

    def __getitem__(self, key: str) -> Any:
        return self.raw[key]

    def __contains__(self, key: object) -> bool:
        return key in self.raw

    def get(self, key: str, default: Any = None) -> Any:
        """キーの値を返す."""
        return self.raw.get(key, default)

    @property
    def meta(self) -> ExtensionMeta | None:
        """応答の `_meta`."""
        raw_meta = self.raw.get("_meta")
        return ExtensionMeta.from_wire(raw_meta) if isinstance(raw_meta, dict) else None
