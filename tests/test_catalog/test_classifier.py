"""Tests for node classification and configuration batching."""

from flowforge.catalog.classifier import CatalogNode, NodeClassifier, assign_batch, configuration_hint, rules_for
from flowforge.catalog.rules import RULE_SETS, render_rules


def _node(node_id: str, node_type: str, category=None, description: str = "") -> CatalogNode:
    return CatalogNode(id=node_id, type=node_type, category=category, description=description)


WEBHOOK = _node("webhook", "n8n-nodes-base.webhook", "trigger")
POSTGRES = _node("postgres", "n8n-nodes-base.postgres")
SLACK = _node("slack", "n8n-nodes-base.slack", "output")
CRM = _node("crm", "n8n-nodes-base.acmeCrm", "output", "Requires an API key credential")
OPENAI = _node("openai", "@n8n/n8n-nodes-langchain.lmChatOpenAi")
CODE = _node("code", "n8n-nodes-base.code")
IF = _node("if", "n8n-nodes-base.if")
LOOP = _node("loop", "n8n-nodes-base.splitInBatches")

ALL_NODES = [WEBHOOK, POSTGRES, SLACK, CRM, OPENAI, CODE, IF, LOOP]


class TestAssignBatch:
    """First matching rule wins."""

    def test_each_kind(self) -> None:
        assert assign_batch(WEBHOOK) == "trigger"
        assert assign_batch(POSTGRES) == "auth"
        assert assign_batch(CRM) == "auth"
        assert assign_batch(OPENAI) == "ai"
        assert assign_batch(CODE) == "code"
        assert assign_batch(IF) == "condition"
        assert assign_batch(LOOP) == "condition"
        assert assign_batch(SLACK) == "simple"

    def test_trigger_suffix(self) -> None:
        assert assign_batch(_node("cron", "n8n-nodes-base.scheduleTrigger")) == "trigger"


class TestCreateBatches:
    def test_every_node_in_exactly_one_batch(self) -> None:
        batches = NodeClassifier().create_batches(ALL_NODES)

        ids = [node_id for batch in batches for node_id in batch.node_ids]
        assert sorted(ids) == sorted(n.id for n in ALL_NODES)
        assert len(ids) == len(set(ids))

    def test_batch_order_and_priorities(self) -> None:
        batches = NodeClassifier().create_batches(ALL_NODES)

        assert [b.id for b in batches] == ["simple", "trigger", "auth", "ai", "code", "condition"]
        assert [b.priority for b in batches] == [1, 2, 3, 4, 5, 6]
        assert [b.parallel for b in batches] == [True, False, False, False, False, False]

    def test_empty_batches_are_skipped(self) -> None:
        batches = NodeClassifier().create_batches([IF, WEBHOOK])

        assert [(b.id, b.priority) for b in batches] == [("trigger", 1), ("condition", 2)]

    def test_ids_within_batch_are_sorted(self) -> None:
        batch = NodeClassifier().create_batches([POSTGRES, CRM])[0]
        assert batch.node_ids == ["crm", "postgres"]


class TestCategorize:
    def test_result_is_order_independent(self) -> None:
        """Any permutation of the input gives the same result."""
        classifier = NodeClassifier()
        assert classifier.categorize(ALL_NODES) == classifier.categorize(list(reversed(ALL_NODES)))
        assert classifier.categorize(ALL_NODES) == classifier.categorize(ALL_NODES[3:] + ALL_NODES[:3])

    def test_groupings(self) -> None:
        result = NodeClassifier().categorize(ALL_NODES)

        assert result.by_category["trigger"] == ["webhook"]
        assert result.by_category["uncategorized"] == ["code", "if", "loop", "openai", "postgres"]
        assert result.by_special_type["condition"] == ["if"]
        assert result.by_special_type["loop"] == ["loop"]
        assert result.by_package["@n8n/n8n-nodes-langchain"] == ["openai"]
        assert result.by_connection_pattern["branching"] == ["if"]

    def test_estimated_tokens(self) -> None:
        result = NodeClassifier().categorize([WEBHOOK, IF, CODE])
        assert result.estimated_tokens == 100 + 300 + 500

    def test_batch_for(self) -> None:
        result = NodeClassifier().categorize([WEBHOOK, IF])
        assert result.batch_for("if").id == "condition"
        assert result.batch_for("ghost") is None


class TestRules:
    def test_rules_in_canonical_order(self) -> None:
        assert rules_for([IF, CODE]) == ["CODE_NODE_RULES", "CONDITION_RULES", "EXPRESSION_RULES"]

    def test_database_needs_credentials_rules(self) -> None:
        assert rules_for([POSTGRES]) == ["DATABASE_RULES", "CREDENTIAL_RULES"]

    def test_transform_category(self) -> None:
        rules = rules_for([_node("set", "n8n-nodes-base.set", "transform")])
        assert rules == ["TRANSFORM_RULES", "DATA_MAPPING_RULES"]

    def test_render_rules_skips_unknown(self) -> None:
        text = render_rules(["WEBHOOK_RULES", "NOPE"])
        assert text == RULE_SETS["WEBHOOK_RULES"]


class TestConfigurationHint:
    def test_condition_hint(self) -> None:
        hint = configuration_hint(IF)

        assert hint.complexity == "moderate"
        assert hint.typical_role == "flow_control"
        assert "condition_expression" in hint.suggested_config

    def test_langchain_can_be_tool(self) -> None:
        hint = configuration_hint(OPENAI)
        assert hint.can_be_ai_tool is True
        assert hint.complexity == "complex"
