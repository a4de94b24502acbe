"""
Fixed-Price ICO Package Initialization

This package provides a fixed-price Initial Coin Offering (ICO) engine with a
Solana ledger adapter, exposed through the Model Context Protocol (MCP). An
owner configures a sale window, a unit price and an optional per-purchase cap;
buyers exchange SOL for the sale token while the window is active; the owner
later withdraws proceeds and unsold inventory.

The package includes:
- The sale instance: configuration, purchase engine, treasury and views
- Sale window evaluation and fixed-price allocation arithmetic
- The ledger interface with in-memory and Solana RPC implementations
- Rate limiting and custom error handling
- MCP server and Solana Actions endpoints
"""
