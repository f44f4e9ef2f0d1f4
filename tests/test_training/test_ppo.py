# Tests for the PPO update engine

import pytest
import torch
from dataclasses import replace
from gigalearn.analysis.metrics import Report
from gigalearn.core.exceptions import CheckpointError, ConfigurationError
from gigalearn.training.config import TransferLearnConfig
from gigalearn.training.experience import ExperienceBuffer, ExperienceTensors
from gigalearn.training.ppo import MinibatchResult, PPOLearner, minibatch_bounds


def _fill(experience: ExperienceTensors, num_actions: int) -> ExperienceBuffer:
    buffer = ExperienceBuffer(0, max_action_index=num_actions - 1)
    buffer.set_data(experience)
    return buffer


def _params(learner: PPOLearner):
    return {model.name: model.copy_params() for model in learner.models}


class TestConstruction:

    def test_models(self, obs_size, num_actions, ppo_config):
        learner = PPOLearner(obs_size, num_actions, ppo_config)
        assert learner.models.names() == ["shared_head", "policy", "critic"]
        assert learner.get_policy_models().names() == ["shared_head", "policy"]
        learner.close()

    def test_no_shared_head(self, obs_size, num_actions, ppo_config):
        config = replace(ppo_config, shared_head=replace(ppo_config.shared_head, layer_sizes=[]))
        learner = PPOLearner(obs_size, num_actions, config)
        assert learner.models.get("shared_head") is None
        learner.close()

    def test_batch_not_multiple_of_mini_batch(self, obs_size, num_actions, ppo_config):
        config = replace(ppo_config, batch_size=30, mini_batch_size=16)
        with pytest.raises(ConfigurationError):
            PPOLearner(obs_size, num_actions, config)

    def test_zero_mini_batch_uses_batch_size(self, obs_size, num_actions, ppo_config):
        learner = PPOLearner(obs_size, num_actions, replace(ppo_config, mini_batch_size=0))
        assert learner.config.mini_batch_size == ppo_config.batch_size
        learner.close()

    def test_learning_rates(self, obs_size, num_actions, ppo_config):
        """Shared head trains at the smaller of the two rates."""
        config = replace(ppo_config, policy_lr=1e-3, critic_lr=5e-4)
        learner = PPOLearner(obs_size, num_actions, config)

        assert learner.models["policy"].optimizer.param_groups[0]["lr"] == 1e-3
        assert learner.models["critic"].optimizer.param_groups[0]["lr"] == 5e-4
        assert learner.models["shared_head"].optimizer.param_groups[0]["lr"] == 5e-4
        learner.close()


class TestInference:

    @pytest.fixture
    def learner(self, obs_size, num_actions, ppo_config):
        learner = PPOLearner(obs_size, num_actions, ppo_config, seed=1)
        yield learner
        learner.close()

    def test_infer_actions(self, learner, obs_size, num_actions):
        masks = torch.zeros(20, num_actions, dtype=torch.uint8)
        masks[:, 2] = 1
        masks[:, 3] = 1

        actions, log_probs = learner.infer_actions(torch.randn(20, obs_size), masks)

        assert actions.shape == (20,)
        assert set(actions.tolist()) <= {2, 3}
        assert log_probs.shape == (20,)
        assert (log_probs <= 0).all()

    def test_deterministic_inference(self, obs_size, num_actions, ppo_config):
        learner = PPOLearner(obs_size, num_actions, replace(ppo_config, deterministic=True))
        obs = torch.randn(5, obs_size)
        masks = torch.ones(5, num_actions, dtype=torch.uint8)

        a1, log_probs = learner.infer_actions(obs, masks)
        a2, _ = learner.infer_actions(obs, masks)

        assert log_probs is None
        assert torch.equal(a1, a2)
        learner.close()

    def test_infer_critic_batched(self, learner, obs_size):
        """Chunked critic inference matches a single pass."""
        obs = torch.randn(50, obs_size)

        values = learner.infer_critic_batched(obs, max_batch_size=16)

        assert values.shape == (50,)
        assert values.device.type == "cpu"
        assert torch.allclose(values, learner.infer_critic(obs))


class TestLearn:

    @pytest.fixture
    def learner(self, obs_size, num_actions, ppo_config):
        learner = PPOLearner(obs_size, num_actions, ppo_config, seed=0)
        yield learner
        learner.close()

    def test_first_iteration_report(self, learner, experience, num_actions):
        """First iteration reports only entropy and KL."""
        report = Report()
        learner.learn(_fill(experience, num_actions), report, is_first_iteration=True)

        assert "Policy Entropy" in report
        assert "Mean KL Divergence" in report
        assert "Policy Loss" not in report
        assert "Policy Update Magnitude" not in report

    def test_later_iteration_report(self, learner, experience, num_actions):
        report = Report()
        learner.learn(_fill(experience, num_actions), report, is_first_iteration=False)

        for key in (
            "Policy Entropy",
            "Mean KL Divergence",
            "Policy Loss",
            "Critic Loss",
            "SB3 Clip Fraction",
            "Policy Update Magnitude",
            "Critic Update Magnitude",
            "Shared Head Update Magnitude",
        ):
            assert key in report, key
        assert "Guiding Loss" not in report
        assert report["Policy Update Magnitude"] > 0
        assert report["Critic Update Magnitude"] > 0
        assert 0.0 <= report["SB3 Clip Fraction"] <= 1.0

    def test_deterministic_refuses_to_learn(self, obs_size, num_actions, ppo_config, experience):
        """Learning in deterministic mode raises and changes nothing."""
        learner = PPOLearner(obs_size, num_actions, replace(ppo_config, deterministic=True))
        before = _params(learner)

        with pytest.raises(ConfigurationError):
            learner.learn(_fill(experience, num_actions), Report(), is_first_iteration=False)

        for name, params in _params(learner).items():
            assert torch.equal(params, before[name])
        learner.close()

    def test_zero_policy_lr_freezes_policy(self, obs_size, num_actions, ppo_config, experience):
        learner = PPOLearner(obs_size, num_actions, replace(ppo_config, policy_lr=0.0))
        before = _params(learner)

        report = Report()
        learner.learn(_fill(experience, num_actions), report, is_first_iteration=False)

        after = _params(learner)
        assert torch.equal(after["policy"], before["policy"])
        assert not torch.equal(after["critic"], before["critic"])
        assert "Policy Loss" not in report
        assert "Critic Loss" in report
        learner.close()

    def test_zero_critic_lr_freezes_critic(self, obs_size, num_actions, ppo_config, experience):
        learner = PPOLearner(obs_size, num_actions, replace(ppo_config, critic_lr=0.0))
        before = _params(learner)

        report = Report()
        learner.learn(_fill(experience, num_actions), report, is_first_iteration=False)

        after = _params(learner)
        assert torch.equal(after["critic"], before["critic"])
        assert not torch.equal(after["policy"], before["policy"])
        assert "Critic Loss" not in report
        learner.close()

    def test_advantages_in_store_untouched(self, learner, experience, num_actions):
        """Normalization only touches the per-batch copies."""
        before = experience.advantages.clone()
        learner.learn(_fill(experience, num_actions), Report(), is_first_iteration=True)
        assert torch.equal(experience.advantages, before)

    def test_faulty_batches_skipped(self, learner, experience, num_actions):
        """A failing minibatch skips its step and omits its metrics."""
        bad = replace(experience, states=torch.randn(experience.num_rows(), 3))
        before = _params(learner)

        report = Report()
        learner.learn(_fill(bad, num_actions), report, is_first_iteration=True)

        assert "Policy Entropy" not in report
        for name, params in _params(learner).items():
            assert torch.equal(params, before[name])

    def test_critic_fault_drops_policy_metrics(self, learner, experience, num_actions):
        """A batch that fails after the policy head reports none of its numbers."""
        bad = replace(experience, target_values=torch.randn(experience.num_rows(), 3))
        before = _params(learner)

        report = Report()
        learner.learn(_fill(bad, num_actions), report, is_first_iteration=False)

        for key in ("Policy Entropy", "Mean KL Divergence", "Policy Loss", "Critic Loss", "SB3 Clip Fraction"):
            assert key not in report, key
        assert report["Policy Update Magnitude"] == 0
        for name, params in _params(learner).items():
            assert torch.equal(params, before[name])

    def test_whole_call_failure_leaves_report_empty(self, learner):
        class BrokenBuffer:
            def get_all_batches_shuffled(self, batch_size, overbatching):
                raise RuntimeError("broken")

        report = Report()
        learner.learn(BrokenBuffer(), report, is_first_iteration=False)
        assert len(report) == 0

    def test_guiding_policy(self, obs_size, num_actions, ppo_config, experience, temp_dir):
        """A guiding policy adds its loss term to the report."""
        source = PPOLearner(obs_size, num_actions, ppo_config)
        source.save_to(temp_dir)
        source.close()

        config = replace(ppo_config, use_guiding_policy=True, guiding_policy_path=str(temp_dir))
        learner = PPOLearner(obs_size, num_actions, config)
        assert all(not p.requires_grad for m in learner.guiding_policy_models for p in m.parameters())

        report = Report()
        learner.learn(_fill(experience, num_actions), report, is_first_iteration=False)

        assert "Guiding Loss" in report
        assert report["Guiding Loss"] >= 0
        learner.close()


class TestMinibatchResult:

    def test_ok_by_default(self):
        assert MinibatchResult().ok

    def test_fault(self):
        result = MinibatchResult.fault(RuntimeError("bad shape"))
        assert not result.ok
        assert "RuntimeError" in result.message
        assert not result.device_related

    def test_device_fault(self):
        assert MinibatchResult.fault(RuntimeError("CUDA error: launch failure")).device_related


class TestPersistence:

    def test_save_load_roundtrip(self, obs_size, num_actions, ppo_config, temp_dir):
        a = PPOLearner(obs_size, num_actions, ppo_config, seed=0)
        torch.manual_seed(123)
        b = PPOLearner(obs_size, num_actions, ppo_config, seed=0)

        a.save_to(temp_dir)
        b.load_from(temp_dir)

        for name, params in _params(a).items():
            assert torch.equal(params, _params(b)[name])
        assert b.models["policy"].optimizer.param_groups[0]["lr"] == ppo_config.policy_lr
        a.close()
        b.close()

    def test_load_missing_folder(self, obs_size, num_actions, ppo_config, temp_dir):
        learner = PPOLearner(obs_size, num_actions, ppo_config)
        with pytest.raises(CheckpointError):
            learner.load_from(temp_dir / "missing")
        learner.close()


class TestTransferLearn:

    def test_report_and_learning_rates(self, obs_size, num_actions, ppo_config, set_seed):
        old = PPOLearner(obs_size, num_actions, ppo_config)
        learner = PPOLearner(obs_size, num_actions, ppo_config)

        obs = torch.randn(32, obs_size)
        masks = torch.ones(32, num_actions, dtype=torch.uint8)
        report = Report()

        learner.transfer_learn(
            old.get_policy_models(),
            new_obs=obs,
            old_obs=obs,
            new_action_masks=masks,
            old_action_masks=masks,
            action_maps=None,
            report=report,
            config=TransferLearnConfig(lr=1e-3, epochs=5),
        )

        for key in (
            "Old Policy Entropy",
            "Transfer Learn Accuracy",
            "Transfer Learn Loss",
            "Policy Entropy",
            "Policy Update Magnitude",
        ):
            assert key in report, key
        assert report["Policy Update Magnitude"] > 0
        assert learner.models["policy"].optimizer.param_groups[0]["lr"] == ppo_config.policy_lr
        old.close()
        learner.close()

    def test_action_maps_and_kl(self, obs_size, num_actions, ppo_config, set_seed):
        old = PPOLearner(obs_size, num_actions, ppo_config)
        learner = PPOLearner(obs_size, num_actions, ppo_config)

        obs = torch.randn(16, obs_size)
        masks = torch.ones(16, num_actions, dtype=torch.uint8)
        # Reverse the action order between old and new
        action_maps = torch.arange(num_actions - 1, -1, -1).repeat(16, 1)
        report = Report()

        learner.transfer_learn(
            old.get_policy_models(), obs, obs, masks, masks, action_maps, report,
            TransferLearnConfig(epochs=2, use_kl_div=True),
        )

        assert torch.isfinite(torch.tensor(report["Transfer Learn Loss"]))
        old.close()
        learner.close()


class TestMinibatchBounds:

    def test_whole_batch_when_not_split(self):
        assert minibatch_bounds(48, 16, split=False) == [(0, 48)]

    def test_zero_size_is_whole_batch(self):
        assert minibatch_bounds(40, 0) == [(0, 40)]

    def test_short_last_minibatch(self):
        assert minibatch_bounds(40, 16) == [(0, 16), (16, 32), (32, 40)]

    @pytest.mark.parametrize("rows", [32, 40, 63])
    def test_ratios_cover_oversized_batch(self, rows):
        """Loss scales sum to rows / batch_size, even past batch_size."""
        batch_size = 32
        bounds = minibatch_bounds(rows, 16)

        assert bounds[0][0] == 0
        assert bounds[-1][1] == rows
        assert all(a[1] == b[0] for a, b in zip(bounds, bounds[1:]))
        assert sum((stop - start) / batch_size for start, stop in bounds) == pytest.approx(rows / batch_size)


class TestInferPolicyProbs:

    def test_masked_actions_get_floor(self, obs_size, num_actions, ppo_config):
        learner = PPOLearner(obs_size, num_actions, ppo_config)
        masks = torch.ones(6, num_actions, dtype=torch.uint8)
        masks[:, 0] = 0

        probs = PPOLearner.infer_policy_probs(learner.get_policy_models(), torch.randn(6, obs_size), masks)

        assert probs.shape == (6, num_actions)
        assert torch.allclose(probs.sum(-1), torch.ones(6), atol=1e-5)
        assert (probs[:, 0] < 1e-6).all()
        learner.close()
