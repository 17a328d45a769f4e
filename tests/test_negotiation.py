"""
Tests for the negotiation state machine and the signing gate.

Validates:
- Contract creation and submission
- Proposal acceptance and the unchanged-on-failure property
- Locked and Injected terms cannot be moved through proposals
- Signing happens exactly once and starts metering
- Usage metering and quota exhaustion
- Termination and revocation
"""

import pytest

from tds_console.core.errors import IllegalTransition, ProposalRejected, QuotaExhausted, VersionConflict
from tds_console.models.contract import ContractPolicy, ContractStatus, PartyRole, Proposer
from tds_console.services import negotiation
from tds_console.services.injection import RuntimeContext

from conftest import T0


def _with(policy, **terms):
    return ContractPolicy(actions=policy.actions, constraints={**policy.constraints, **terms})


def _assert_unchanged(before, after):
    assert after.version == before.version
    assert after.history == before.history
    assert after.my_policy == before.my_policy
    assert after.counterparty_policy == before.counterparty_policy


class TestCreateAndSubmit:

    def test_create_contract(self, draft, initial_policy):
        assert draft.status == ContractStatus.DRAFT
        assert draft.version == 0
        assert draft.history == ()
        assert draft.role == PartyRole.PROVIDER
        assert draft.my_policy == initial_policy
        assert draft.counterparty_policy is None

    def test_create_rejects_invalid_terms(self, catalog):
        with pytest.raises(ProposalRejected) as exc:
            negotiation.create_contract(
                catalog, product_ref="DP-1", role="Consumer",
                my_policy=ContractPolicy(constraints={"usageCount": 6000, "environment": "Quantum"}),
            )
        assert set(exc.value.issues) == {"usageCount", "environment"}

    def test_create_rejects_invalid_ranges(self, catalog, initial_policy):
        with pytest.raises(ProposalRejected) as exc:
            negotiation.create_contract(catalog, product_ref="DP-1", role="Consumer", my_policy=initial_policy,
                                        negotiation_ranges={"usageCount": {"min": 50, "max": 2000}})
        assert exc.value.bound_hint == 100

    def test_generated_id(self, catalog, initial_policy):
        contract = negotiation.create_contract(catalog, product_ref="DP-1", role="Consumer",
                                               my_policy=initial_policy, now=T0)
        assert contract.id.startswith("CNT-2025-")

    def test_submit(self, negotiating, initial_policy):
        assert negotiating.status == ContractStatus.NEGOTIATING
        assert negotiating.version == 1
        assert len(negotiating.history) == 1
        entry = negotiating.history[0]
        assert entry.version == 1
        assert entry.proposer == Proposer.ME
        assert entry.policy_snapshot == initial_policy

    def test_submit_seeds_provisional_counterparty(self, negotiating):
        assert negotiating.counterparty_policy == negotiating.my_policy
        assert negotiating.counterparty_provisional

    def test_submit_only_from_draft(self, catalog, negotiating):
        with pytest.raises(IllegalTransition):
            negotiation.submit(catalog, negotiating)


class TestPropose:

    def test_valid_proposal(self, catalog, negotiating, initial_policy):
        proposal = _with(initial_policy, usageCount=2000)
        contract = negotiation.propose(catalog, negotiating, Proposer.COUNTERPARTY, proposal, "More calls")

        assert contract.version == 2
        assert len(contract.history) == 2
        assert contract.history[-1].policy_snapshot == proposal
        assert contract.history[-1].proposer == Proposer.COUNTERPARTY
        assert contract.counterparty_policy == proposal
        assert not contract.counterparty_provisional
        assert contract.my_policy == initial_policy
        changes = contract.history[-1].changes
        assert [(c.key, c.from_value, c.to_value) for c in changes] == [("usageCount", 1000, 2000)]

    def test_input_contract_is_not_modified(self, catalog, negotiating, initial_policy):
        snapshot = negotiating.model_copy(deep=True)
        negotiation.propose(catalog, negotiating, "Counterparty", _with(initial_policy, usageCount=2000))
        assert negotiating == snapshot

    def test_caller_cannot_rewrite_history(self, catalog, negotiating, initial_policy):
        proposal = _with(initial_policy, usageCount=2000)
        contract = negotiation.propose(catalog, negotiating, "Counterparty", proposal)

        proposal.constraints["usageCount"] = 4000
        assert contract.history[-1].policy_snapshot.constraints["usageCount"] == 2000
        assert contract.counterparty_policy.constraints["usageCount"] == 2000

    def test_created_contract_owns_its_policy(self, catalog, initial_policy):
        policy = _with(initial_policy)
        contract = negotiation.create_contract(catalog, product_ref="DP-1", role="Provider", my_policy=policy)

        policy.constraints["usageCount"] = 4000
        assert contract.my_policy.constraints["usageCount"] == 1000

    def test_symmetric_proposals(self, catalog, negotiating, initial_policy):
        contract = negotiation.propose(catalog, negotiating, "Counterparty", _with(initial_policy, usageCount=2000))
        contract = negotiation.propose(catalog, contract, "Me", _with(initial_policy, usageCount=1500))
        assert contract.version == 3
        assert contract.my_policy.constraints["usageCount"] == 1500
        assert contract.counterparty_policy.constraints["usageCount"] == 2000
        assert [e.version for e in contract.history] == [1, 2, 3]

    def test_out_of_bounds_leaves_contract_unchanged(self, catalog, negotiating, initial_policy):
        with pytest.raises(ProposalRejected) as exc:
            negotiation.propose(catalog, negotiating, "Counterparty", _with(initial_policy, usageCount=6000))
        assert exc.value.kind == "OutOfBounds"
        assert exc.value.bound_hint == 5000

    def test_locked_enum_outside_options(self, catalog, negotiating, initial_policy):
        with pytest.raises(ProposalRejected) as exc:
            negotiation.propose(catalog, negotiating, "Counterparty", _with(initial_policy, environment="Quantum"))
        assert exc.value.kind == "OutOfBounds"

    def test_locked_value_cannot_change(self, catalog, negotiating, initial_policy):
        with pytest.raises(ProposalRejected) as exc:
            negotiation.propose(catalog, negotiating, "Counterparty", _with(initial_policy, environment="TEE"))
        assert exc.value.kind == "LockedFieldMutation"

    def test_injected_value_rejected(self, catalog, negotiating, initial_policy):
        with pytest.raises(ProposalRejected) as exc:
            negotiation.propose(catalog, negotiating, "Counterparty",
                                _with(initial_policy, consumerConnectorId="did:conn:evil"))
        assert exc.value.kind == "LockedFieldMutation"

    def test_unknown_key_rejected(self, catalog, negotiating, initial_policy):
        with pytest.raises(ProposalRejected) as exc:
            negotiation.propose(catalog, negotiating, "Counterparty", _with(initial_policy, bogus=1))
        assert exc.value.kind == "NotFound"

    def test_all_failing_keys_reported(self, catalog, negotiating, initial_policy):
        with pytest.raises(ProposalRejected) as exc:
            negotiation.propose(catalog, negotiating, "Counterparty",
                                _with(initial_policy, usageCount=50, environment="TEE", sourceIp="1.1.1.1"))
        assert set(exc.value.issues) == {"usageCount", "environment", "sourceIp"}

    @pytest.mark.parametrize("terms", [
        {"usageCount": 6000},
        {"usageCount": 99},
        {"usageCount": float("nan")},
        {"usageCount": "inf"},
        {"environment": "Quantum"},
        {"environment": "TEE"},
        {"certFingerprint": "ab:cd"},
    ])
    def test_rejection_has_no_side_effects(self, catalog, negotiating, initial_policy, terms):
        before = negotiating.model_copy(deep=True)
        with pytest.raises(ProposalRejected):
            negotiation.propose(catalog, negotiating, "Counterparty", _with(initial_policy, **terms))
        _assert_unchanged(before, negotiating)

    def test_equivalent_values_are_not_changes(self, catalog, negotiating, initial_policy):
        contract = negotiation.propose(catalog, negotiating, "Counterparty", _with(initial_policy, usageCount="1000"))
        assert contract.history[-1].changes == ()

    def test_negotiation_range_narrows_bounds(self, catalog, initial_policy):
        contract = negotiation.create_contract(catalog, product_ref="DP-1", role="Provider", my_policy=initial_policy,
                                               negotiation_ranges={"usageCount": {"min": 500, "max": 1500}})
        contract = negotiation.submit(catalog, contract)
        with pytest.raises(ProposalRejected) as exc:
            negotiation.propose(catalog, contract, "Counterparty", _with(initial_policy, usageCount=2000))
        assert exc.value.bound_hint == 1500

    def test_stale_base_version(self, catalog, negotiating, initial_policy):
        with pytest.raises(VersionConflict) as exc:
            negotiation.propose(catalog, negotiating, "Me", initial_policy, base_version=0)
        assert exc.value.actual == 1

    def test_draft_accepts_no_proposals(self, catalog, draft, initial_policy):
        with pytest.raises(IllegalTransition):
            negotiation.propose(catalog, draft, "Me", initial_policy)

    def test_proposal_reopens_pending_signature(self, catalog, negotiating, initial_policy):
        pending = negotiation.request_signature(negotiating)
        assert pending.status == ContractStatus.PENDING_SIGNATURE
        contract = negotiation.propose(catalog, pending, "Counterparty", _with(initial_policy, usageCount=2000))
        assert contract.status == ContractStatus.NEGOTIATING


class TestCurrentDiff:

    def test_provisional_seed_diffs_against_empty_base(self, catalog, negotiating):
        keys = [c.key for c in negotiation.current_diff(catalog, negotiating)]
        assert keys == ["usageCount", "validUntil"]

    def test_diff_after_counter_proposal(self, catalog, negotiating, initial_policy):
        contract = negotiation.propose(catalog, negotiating, "Counterparty", _with(initial_policy, usageCount=2000))
        changes = negotiation.current_diff(catalog, contract)
        assert [(c.key, c.from_value, c.to_value) for c in changes] == [("usageCount", 1000, 2000)]

    def test_draft_has_no_diff(self, catalog, draft):
        assert negotiation.current_diff(catalog, draft) == []


class TestSigning:

    def test_scenario_a(self, catalog, negotiating, initial_policy, proof):
        """Counterparty overshoots, then settles on 2000 calls, which the signature grants."""

        with pytest.raises(ProposalRejected) as exc:
            negotiation.propose(catalog, negotiating, "Counterparty", _with(initial_policy, usageCount=6000))
        assert exc.value.kind == "OutOfBounds"
        assert exc.value.bound_hint == 5000
        assert negotiating.version == 1

        contract = negotiation.propose(catalog, negotiating, "Counterparty", _with(initial_policy, usageCount=2000))
        assert contract.version == 2

        active = negotiation.accept_and_sign(catalog, contract, proof, now=T0)
        assert active.status == ContractStatus.ACTIVE
        assert active.execution_stats.remaining_calls == 2000
        assert active.execution_stats.total_calls == 0
        assert active.execution_stats.last_call_time is None
        assert active.agreed_policy.constraints["usageCount"] == 2000
        assert active.signature.signer_did == proof.signer_did
        assert active.signature.timestamp == T0
        assert len(active.signature.hash) == 64

    def test_sign_from_pending_signature(self, catalog, negotiating, proof):
        active = negotiation.accept_and_sign(catalog, negotiation.request_signature(negotiating), proof)
        assert active.status == ContractStatus.ACTIVE
        assert active.execution_stats.remaining_calls == 1000

    def test_second_signature_is_rejected(self, catalog, negotiating, proof):
        active = negotiation.accept_and_sign(catalog, negotiating, proof)
        active, _ = negotiation.record_usage(catalog, active)
        with pytest.raises(IllegalTransition):
            negotiation.accept_and_sign(catalog, active, proof)
        assert active.execution_stats.remaining_calls == 999
        assert active.execution_stats.total_calls == 1

    def test_draft_cannot_be_signed(self, catalog, draft, proof):
        with pytest.raises(IllegalTransition):
            negotiation.accept_and_sign(catalog, draft, proof)

    def test_identity_is_fixed_at_signature(self, catalog, negotiating, proof):
        active = negotiation.accept_and_sign(catalog, negotiating, proof)
        assert active.role == negotiating.role
        assert active.counterparty_did == negotiating.counterparty_did

    def test_hash_is_deterministic_and_covers_the_proof(self, catalog, negotiating, proof):
        agreed = negotiating.latest_entry.policy_snapshot
        first = negotiation.compute_signature_hash(negotiating, agreed, proof)
        assert first == negotiation.compute_signature_hash(negotiating, agreed, proof)
        other = proof.model_copy(update={"proof": "another"})
        assert first != negotiation.compute_signature_hash(negotiating, agreed, other)

    def test_missing_usage_count_grants_nothing(self, catalog, proof):
        contract = negotiation.create_contract(catalog, product_ref="DP-1", role="Consumer",
                                               my_policy=ContractPolicy(actions=["read"]))
        active = negotiation.accept_and_sign(catalog, negotiation.submit(catalog, contract), proof)
        assert active.execution_stats.remaining_calls == 0


class TestUsage:

    def _active(self, catalog, initial_policy, proof, calls):
        contract = negotiation.create_contract(catalog, product_ref="DP-1", role="Provider",
                                               my_policy=_with(initial_policy, usageCount=calls))
        contract = negotiation.submit(catalog, contract)
        return negotiation.accept_and_sign(catalog, contract, proof)

    def test_scenario_d(self, catalog, initial_policy, proof):
        """Two calls left: two accesses pass, the third is refused."""

        active = self._active(catalog, initial_policy, proof, 100)
        stats = active.execution_stats.model_copy(update={"remaining_calls": 2})
        active = active.model_copy(update={"execution_stats": stats})

        active, first = negotiation.record_usage(catalog, active, now=T0)
        assert first.allowed and first.remaining_calls == 1
        active, second = negotiation.record_usage(catalog, active, now=T0)
        assert second.remaining_calls == 0
        assert active.execution_stats.total_calls == 2
        assert active.execution_stats.last_call_time == T0

        with pytest.raises(QuotaExhausted) as exc:
            negotiation.record_usage(catalog, active)
        assert exc.value.to_dict() == {
            "error": "QuotaExhausted",
            "detail": f"Contract {active.id} has no remaining calls",
            "allowed": False,
            "remainingCalls": 0,
        }

    def test_injected_values_are_bound_from_context(self, catalog, initial_policy, proof):
        policy = _with(initial_policy, consumerConnectorId=None, sourceIp=None)
        contract = negotiation.create_contract(catalog, product_ref="DP-1", role="Provider", my_policy=policy)
        active = negotiation.accept_and_sign(catalog, negotiation.submit(catalog, contract), proof)

        context = RuntimeContext(connector_did="did:conn:node_0086_bank01", source_ip="10.25.102.14")
        _, result = negotiation.record_usage(catalog, active, context)
        assert result.injected == {"consumerConnectorId": "did:conn:node_0086_bank01", "sourceIp": "10.25.102.14"}

    def test_usage_requires_active_contract(self, catalog, negotiating):
        with pytest.raises(IllegalTransition):
            negotiation.record_usage(catalog, negotiating)


class TestTermination:

    def test_terminate_negotiation(self, negotiating):
        terminated = negotiation.terminate(negotiating)
        assert terminated.status == ContractStatus.TERMINATED
        with pytest.raises(IllegalTransition):
            negotiation.terminate(terminated)

    def test_terminated_contract_accepts_nothing(self, catalog, negotiating, initial_policy, proof):
        terminated = negotiation.terminate(negotiating)
        with pytest.raises(IllegalTransition):
            negotiation.propose(catalog, terminated, "Me", initial_policy)
        with pytest.raises(IllegalTransition):
            negotiation.accept_and_sign(catalog, terminated, proof)

    def test_revoke_active_contract(self, catalog, negotiating, proof):
        active = negotiation.accept_and_sign(catalog, negotiating, proof)
        revoked = negotiation.revoke(active)
        assert revoked.status == ContractStatus.REVOKED
        assert revoked.signature == active.signature
        with pytest.raises(IllegalTransition):
            negotiation.record_usage(catalog, revoked)

    def test_only_active_contracts_can_be_revoked(self, negotiating):
        with pytest.raises(IllegalTransition):
            negotiation.revoke(negotiating)
