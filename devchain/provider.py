"""
web3.py provider that talks to a DevChain in the same process.

    w3 = Web3(DevChainProvider())
"""

import itertools
import logging
from typing import Any, Optional

from web3.providers.base import BaseProvider
from web3.types import RPCEndpoint, RPCResponse

from devchain.chain import DevChain
from devchain.rpc import RPCDispatcher

logger = logging.getLogger("opfactory.devchain.provider")


class DevChainProvider(BaseProvider):

    def __init__(self, chain: Optional[DevChain] = None):
        super().__init__()
        self.chain = chain or DevChain()
        self.dispatcher = RPCDispatcher(self.chain)
        self._ids = itertools.count(1)

    def make_request(self, method: RPCEndpoint, params: Any) -> RPCResponse:
        request = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": method,
            "params": list(params or []),
        }
        response = self.dispatcher.handle(request)
        if "error" in response:
            logger.debug(f"{method} → error {response['error']['message']}")
        return response

    def is_connected(self, show_traceback: bool = False) -> bool:
        return True
