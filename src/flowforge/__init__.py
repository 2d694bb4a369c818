"""flowforge: build n8n workflows from natural language in five phases."""
