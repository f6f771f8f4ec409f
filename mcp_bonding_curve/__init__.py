"""
Edition Bonding Curve Package Initialization

This package prices and mints sequential editions of a collection along a bonding curve, and
exposes the engine through a Model Context Protocol (MCP) server. Each edition costs at least
as much as the previous one, according to the curve chosen for the collection.

The package includes:
- Curve configuration, validation and JSON persistence
- Linear, exponential, logarithmic and lookup-table pricing with checked u64 arithmetic
- Atomic minting that pays the curve authority and issues one unit together
- Authority-gated parameter updates and curve closure
- Solana settlement (payment verification and token issuance) and an in-memory ledger
- A Solana Action endpoint for buying the next edition
- Rate limiting and custom error handling
"""
