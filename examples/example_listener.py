#!/usr/bin/env python3
"""
Example: Using the Subscription Supervisor Programmatically

Subscribes to ERC-20 Transfer events on two providers with failover and
prints a summary of what was received when stopped.
"""

import asyncio
from collections import Counter

from rich.console import Console

from subscription_supervisor import ConsoleSink, SubscriptionDescriptor, SupervisionOrchestrator
from subscription_supervisor.web3_client import Web3Connector

TRANSFER_ABI = [
    {
        "anonymous": False,
        "name": "Transfer",
        "type": "event",
        "inputs": [
            {"indexed": True, "name": "from", "type": "address"},
            {"indexed": True, "name": "to", "type": "address"},
            {"indexed": False, "name": "value", "type": "uint256"},
        ],
    }
]


async def main():
    """
    Example of using the supervisor with custom processing.
    """
    console = Console()

    # Configure your WebSocket URLs; the supervisor fails over between them
    providers = ["wss://node-a.example", "wss://node-b.example"]
    token = "0x0000000000000000000000000000000000001000"  # Replace with your contract

    received = Counter()

    def on_transfer(record):
        received[record.checkpoint] += 1
        console.print(f"[green]{record.event_name}[/green] block={record.checkpoint} args={dict(record.args)}")

    def on_history(records):
        console.print(f"[magenta]Recovered {len(records)} events missed by the live stream[/magenta]")

    supervisor = SupervisionOrchestrator(Web3Connector(), sink=ConsoleSink(console))
    supervisor.set_providers(providers)
    await supervisor.init_connection()
    await supervisor.listen(
        SubscriptionDescriptor(
            address=token,
            event_name="Transfer",
            abi=TRANSFER_ABI,
            data_callback=on_transfer,
            history_callback=on_history,
            history_interval=60.0,
            keep_alive_timeout=120.0,
        )
    )

    try:
        await asyncio.Event().wait()
    finally:
        await supervisor.aclose()
        console.print(f"\n[bold]Summary: Received {sum(received.values())} events across {len(received)} blocks[/bold]")


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass
