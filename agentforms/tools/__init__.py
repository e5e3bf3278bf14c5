from agentforms.tools.datastore import Collection, InMemoryDatastore

__all__ = ["Collection", "InMemoryDatastore"]
