"""
Create Service Bus entities for examples.

Provisions localbus.yaml (next to this file) into the namespace the
examples' connection string points at.
"""

import asyncio
from pathlib import Path

from localbus.core.config_manager import ConfigManager
from localbus.servicebus.config import client_kwargs, connection_string_for, create_backend, provision


CONFIG_FILE = Path(__file__).with_name("localbus.yaml")

config = ConfigManager().load(config_file=str(CONFIG_FILE))
CONNECTION_STRING = connection_string_for(config)
CLIENT_KWARGS = client_kwargs(config)


async def create_entities():
    """Create queues, topics, and subscriptions for examples."""
    print("Creating Service Bus entities...\n")

    backend = create_backend(config)
    summary = await provision(backend, config)

    for kind, names in summary.to_dict().items():
        for name in names:
            print(f"  {kind}: {name}")
    print(f"\nConnection string: {CONNECTION_STRING}")


if __name__ == "__main__":
    asyncio.run(create_entities())
