"""Service Bus test double: backend, client facade and administration."""
