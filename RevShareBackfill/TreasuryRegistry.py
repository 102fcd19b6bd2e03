# TreasuryRegistry.py
#
# Resolves protocol addresses (the Takadao revenue receiver) by name from the
# AddressManager contract. The allocation step only needs something with a
# resolve_address(name) method, so tests pass a StaticRegistry instead.

import sys
from typing import Dict, Optional

import requests
from web3 import Web3
from web3.exceptions import Web3Exception

from RevShareBackfill.BackfillCommon import ZERO_ADDRESS, normalize_addr

# Struct: { name: bytes32, addr: address, addressType: uint8 }
ADDRESS_MANAGER_ABI = [
    {
        "inputs": [{"internalType": "string", "name": "name", "type": "string"}],
        "name": "getProtocolAddressByName",
        "outputs": [
            {
                "components": [
                    {"internalType": "bytes32", "name": "name", "type": "bytes32"},
                    {"internalType": "address", "name": "addr", "type": "address"},
                    {"internalType": "uint8", "name": "addressType", "type": "uint8"},
                ],
                "internalType": "struct ProtocolAddress",
                "name": "",
                "type": "tuple",
            }
        ],
        "stateMutability": "view",
        "type": "function",
    }
]


class AddressRegistry:
    def resolve_address(self, name: str) -> Optional[str]:
        raise NotImplementedError


class StaticRegistry(AddressRegistry):
    """Fixed name -> address map."""

    def __init__(self, addresses: Dict[str, str]):
        self.addresses = {k: normalize_addr(v) for k, v in addresses.items()}

    def resolve_address(self, name: str) -> Optional[str]:
        return self.addresses.get(name)


class AddressManagerRegistry(AddressRegistry):
    """
    Read-only lookup through getProtocolAddressByName on the AddressManager.

    Returns None (and prints why) when the RPC is unreachable, the call
    reverts or the stored address is zero. The caller decides how loudly to
    report it.
    """

    def __init__(self, rpc_url: str, address_manager: str, w3: Optional[Web3] = None):
        self.w3 = w3 or Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": 30}))
        self.address_manager = Web3.to_checksum_address(address_manager)

    def resolve_address(self, name: str) -> Optional[str]:
        print(f"Connecting to AddressManager at {self.address_manager}", file=sys.stderr)
        contract = self.w3.eth.contract(address=self.address_manager, abi=ADDRESS_MANAGER_ABI)
        try:
            protocol_address = contract.functions.getProtocolAddressByName(name).call()
        except (Web3Exception, requests.RequestException, ValueError) as e:
            print(f"getProtocolAddressByName({name!r}) failed: {e}", file=sys.stderr)
            return None

        addr = normalize_addr(protocol_address[1])
        if not addr or addr == ZERO_ADDRESS:
            print(f"AddressManager has no address registered for {name!r}", file=sys.stderr)
            return None
        return addr
