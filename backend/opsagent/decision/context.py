"""Per-decision context assembly from the persistence boundary."""

from ..domain import ActionKind, AgentInput, DecisionContext
from ..store import AgentStore


class DecisionContextBuilder:
    """Builds a fresh ``DecisionContext`` for every decision; nothing is cached."""

    def __init__(
        self,
        store: AgentStore,
        *,
        enabled_actions: list[str] | None = None,
        history_limit: int = 5,
        intake_limit: int = 20,
    ) -> None:
        self.store = store
        self.enabled_actions = enabled_actions
        self.history_limit = history_limit
        self.intake_limit = intake_limit

    def available_actions(self, org_enabled: tuple[str, ...]) -> tuple[str, ...]:
        known = [k.value for k in ActionKind]
        wanted = self.enabled_actions or list(org_enabled) or known
        return tuple(k for k in known if k in wanted)

    def build(self, agent_input: AgentInput) -> DecisionContext:
        org = self.store.get_org_settings(agent_input.org_id)
        correlation_ids = [agent_input.correlation_id]
        thread = agent_input.metadata.get("thread_correlation_id")
        if thread:
            correlation_ids.append(str(thread))
        contact_email = agent_input.contact_info.email if agent_input.contact_info else None
        return DecisionContext(
            input=agent_input,
            org=org,
            pipelines=tuple(self.store.list_pipelines(org.org_id)),
            team=tuple(self.store.team_summaries(org.org_id)),
            intakes=tuple(self.store.list_open_intakes(org.org_id, limit=self.intake_limit)),
            recent_decisions=tuple(
                self.store.recent_decisions(
                    org.org_id,
                    correlation_ids=correlation_ids,
                    contact_email=contact_email,
                    limit=self.history_limit,
                )
            ),
            available_actions=self.available_actions(org.enabled_actions),
        )
