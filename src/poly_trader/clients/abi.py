"""Minimal ABI encoding for the handful of contract calls this package makes."""

from __future__ import annotations

from eth_utils import function_signature_to_4byte_selector, keccak, to_bytes, to_checksum_address

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"
MAX_UINT256 = 2**256 - 1

ERC20_BALANCE_OF = function_signature_to_4byte_selector("balanceOf(address)")
ERC20_APPROVE = function_signature_to_4byte_selector("approve(address,uint256)")
ERC1155_BALANCE_OF = function_signature_to_4byte_selector("balanceOf(address,uint256)")
ERC1155_SET_APPROVAL_FOR_ALL = function_signature_to_4byte_selector(
    "setApprovalForAll(address,bool)"
)
MULTISEND = function_signature_to_4byte_selector("multiSend(bytes)")


def address_bytes(address: str) -> bytes:
    raw = to_bytes(hexstr=address)
    if len(raw) != 20:
        raise ValueError(f"invalid address {address!r}")
    return raw


def encode_address(address: str) -> bytes:
    return address_bytes(address).rjust(32, b"\x00")


def encode_uint(value: int) -> bytes:
    if value < 0 or value > MAX_UINT256:
        raise ValueError("uint256 out of range")
    return value.to_bytes(32, "big")


def encode_bool(value: bool) -> bytes:
    return encode_uint(1 if value else 0)


def encode_bytes(data: bytes) -> bytes:
    # Single dynamic `bytes` argument: offset, length, right-padded payload.
    padded_len = (len(data) + 31) // 32 * 32
    return encode_uint(32) + encode_uint(len(data)) + data.ljust(padded_len, b"\x00")


def erc20_approve_call(spender: str, amount: int = MAX_UINT256) -> bytes:
    return ERC20_APPROVE + encode_address(spender) + encode_uint(amount)


def erc1155_approval_call(operator: str, approved: bool = True) -> bytes:
    return ERC1155_SET_APPROVAL_FOR_ALL + encode_address(operator) + encode_bool(approved)


def multisend_call(transactions: list[tuple[str, bytes]]) -> bytes:
    packed = b""
    for to, data in transactions:
        packed += (
            b"\x00"  # operation: call
            + address_bytes(to)
            + encode_uint(0)  # value
            + encode_uint(len(data))
            + data
        )
    return MULTISEND + encode_bytes(packed)


def create2_address(*, deployer: str, salt: bytes, init_code_hash: str) -> str:
    digest = keccak(b"\xff" + address_bytes(deployer) + salt + to_bytes(hexstr=init_code_hash))
    return to_checksum_address(digest[12:])


def decode_uint(hex_value: str) -> int:
    value = hex_value[2:] if hex_value.startswith("0x") else hex_value
    return int(value or "0", 16)


def to_hex(data: bytes) -> str:
    return "0x" + data.hex()
