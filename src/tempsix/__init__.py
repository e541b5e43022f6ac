"""tempsix - Anonymous messaging relay with short-lived 6-digit identities.

Usage:
    from tempsix import allocator, relay, lifecycle

    alice = allocator.allocate()
    bob = allocator.allocate()

    relay.send(alice, bob, "hi")
    inbox = relay.receive(bob)          # returns and deletes the page
    lifecycle.delete_identity(alice, immediate=True)

    # Run the server
    from tempsix.api import create_app
    app = create_app(RelayOptions(db_path="data.db"))
"""

from tempsix._version import __version__
from tempsix.errors import RelayError
from tempsix.options import RelayConfigError, RelayOptions

__all__ = [
    "__version__",
    "RelayError",
    "RelayOptions",
    "RelayConfigError",
]
