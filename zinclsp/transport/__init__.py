"""Wire transport: framing codec and JSON-RPC session."""
