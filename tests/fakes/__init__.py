"""Backend fakes used by the provider tests."""
