"""Host glue: hook payload schemas and the hook router."""
