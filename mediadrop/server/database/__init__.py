from mediadrop.server.database.sql import SQLStore

__all__ = ["SQLStore"]
