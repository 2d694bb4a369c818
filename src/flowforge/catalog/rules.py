"""Configuration rule text appended to node configuration prompts.

Rule sets are selected by the classifier (see ``NodeClassifier.rules_for``)
and rendered into the prompt in the order of ``RULE_SET_ORDER``.
"""

RULE_SETS: dict[str, str] = {
    "CODE_NODE_RULES": """For Code nodes:
- Use JavaScript mode by default
- Access input data via $input.all() for all items, $input.item for a single item
- Return data as [{json: yourData}]
- Handle errors with try/catch blocks""",
    "AI_NODE_RULES": """For AI/LangChain nodes:
- Select a model appropriate for the task complexity
- Use temperature 0.3 for factual or structured tasks, 0.7 for creative ones
- Map variables with expressions: {{$json.fieldName}}
- Include a system prompt for consistent behaviour""",
    "AI_CONNECTION_RULES": """For AI connections:
- Language models attach to agents through ai_languageModel connections
- Tools attach through ai_tool connections, memory through ai_memory
- Only the agent sits on the main data path""",
    "WEBHOOK_RULES": """For Webhook nodes:
- Set the response mode (onReceived, lastNode or responseNode)
- Use a unique, descriptive webhook path
- Set the HTTP method explicitly
- Configure authentication if the caller is external""",
    "DATABASE_RULES": """For Database nodes:
- Use parameterized queries to prevent SQL injection
- Select only the columns that are needed
- Set schema and table explicitly
- Handle connection errors""",
    "CREDENTIAL_RULES": """For nodes needing credentials:
- Reference credentials by type, never inline secrets in parameters
- Leave credential ids empty for the user to fill in""",
    "CONDITION_RULES": """For Condition/IF nodes:
- Define one clear condition per branch
- Output 0 is the true branch, output 1 the false branch
- Handle null and undefined values
- Be explicit about type coercion""",
    "EXPRESSION_RULES": """For expressions:
- Wrap expressions in {{ }} and access fields through $json
- Reference other nodes with $('Node Name').item.json""",
    "LOOP_RULES": """For loop and batch nodes:
- Set an explicit batch size
- Connect the loop output back to the processing node
- Make sure the done output leads somewhere""",
    "TRANSFORM_RULES": """For Transform nodes:
- Map input fields to the output structure
- Handle data type conversions and null values
- Use expressions for dynamic values: {{$json.field}}""",
    "DATA_MAPPING_RULES": """For data mapping:
- Keep field names stable between nodes
- Prefer explicit field mappings over passing whole items""",
}

RULE_SET_ORDER: list[str] = list(RULE_SETS)


def render_rules(rule_names: list[str]) -> str:
    """Join rule texts in canonical order, skipping unknown names."""
    wanted = set(rule_names)
    return "\n\n".join(RULE_SETS[name] for name in RULE_SET_ORDER if name in wanted)
