# PPO update engine
# Clipped surrogate objective over shuffled, prefetched batches

import copy
import logging
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import torch
import torch.nn as nn
import torch.nn.functional as F

from ..analysis.checkpointing import load_model_set, save_model_set
from ..analysis.metrics import Report
from ..core.exceptions import CheckpointError, ConfigurationError
from ..models.model import Model, ModelSet
from ..models.policy import compute_entropy, masked_probs, policy_probs, sample_actions
from .config import PPOLearnerConfig, TransferLearnConfig
from .experience import ExperienceBuffer, ExperienceTensors
from .pipeline import BatchPipeline


logger = logging.getLogger(__name__)


MAX_GRAD_NORM = 0.5
DEFAULT_CRITIC_BATCH_SIZE = 50_000


@dataclass
class MinibatchResult:
    """Outcome of running the minibatches of one batch."""
    ok: bool = True
    message: str = ""
    device_related: bool = False

    @classmethod
    def fault(cls, error: Exception) -> "MinibatchResult":
        device_related = isinstance(error, torch.cuda.OutOfMemoryError) or "CUDA" in str(error)
        return cls(ok=False, message=f"{type(error).__name__}: {error}", device_related=device_related)


def minibatch_bounds(rows: int, mini_batch_size: int, split: bool = True) -> List[Tuple[int, int]]:
    """Row ranges of the minibatches of one batch.

    Without splitting (or with a non-positive size) the whole batch is one
    minibatch. The last range may be shorter than mini_batch_size.
    """
    if not split or mini_batch_size <= 0:
        return [(0, rows)]
    return [
        (start, min(start + mini_batch_size, rows))
        for start in range(0, rows, mini_batch_size)
    ]


class PPOLearner:
    """Owns the policy/critic models and runs PPO updates on them."""

    def __init__(
        self,
        obs_size: int,
        num_actions: int,
        config: PPOLearnerConfig,
        device: torch.device = torch.device("cpu"),
        seed: int = 0,
    ):
        """Initialize learner.

        Args:
            obs_size: Observation width
            num_actions: Number of discrete actions
            config: PPO hyperparameters
            device: Training device
            seed: Seed for action sampling
        """
        self.config = copy.deepcopy(config)
        self.device = torch.device(device)
        self.obs_size = obs_size
        self.num_actions = num_actions

        if self.config.mini_batch_size == 0:
            self.config.mini_batch_size = self.config.batch_size

        if self.config.batch_size % self.config.mini_batch_size != 0:
            raise ConfigurationError(
                f"PPOLearner: batch_size ({self.config.batch_size}) must be a multiple of "
                f"mini_batch_size ({self.config.mini_batch_size})"
            )

        self.models = self.make_models(True, obs_size, num_actions, self.config, self.device)
        self.set_learning_rates(self.config.policy_lr, self.config.critic_lr)

        logger.info("Model parameter counts:")
        total = 0
        for model in self.models:
            count = model.param_count()
            logger.info(f"  \"{model.name}\": {count:,}")
            total += count
        logger.info(f"  [Total]: {total:,}")

        self.generator = torch.Generator(device=self.device)
        self.generator.manual_seed(seed)

        self.guiding_policy_models: Optional[ModelSet] = None
        if self.config.use_guiding_policy:
            logger.info(f"Guiding policy enabled, loading from {self.config.guiding_policy_path}...")
            self.guiding_policy_models = self.make_models(False, obs_size, num_actions, self.config, self.device)
            load_model_set(self.guiding_policy_models, Path(self.config.guiding_policy_path), load_optims=False)
            for model in self.guiding_policy_models:
                model.requires_grad_(False)
            self.guiding_policy_models.eval()

        self.pipeline = BatchPipeline(self.device, name="ppo-prefetch")

        # Diagnostics for fault logging
        self._stage = "init"
        self._last_action_stats: Tuple[int, int, int] = (0, 0, 0)

    @staticmethod
    def make_models(
        make_critic: bool,
        obs_size: int,
        num_actions: int,
        config: PPOLearnerConfig,
        device: torch.device,
    ) -> ModelSet:
        """Build shared head (if configured), policy and optionally critic."""
        policy_config = replace(config.policy, num_inputs=obs_size, num_outputs=num_actions)
        critic_config = replace(config.critic, num_inputs=obs_size, num_outputs=1)
        shared_head_config = replace(config.shared_head, num_inputs=obs_size, num_outputs=0)

        models = ModelSet()

        if shared_head_config.is_valid():
            if shared_head_config.output_layer:
                raise ConfigurationError("Shared head must not have an output layer")
            policy_config.num_inputs = shared_head_config.layer_sizes[-1]
            critic_config.num_inputs = shared_head_config.layer_sizes[-1]
            models.add(Model("shared_head", shared_head_config, device))

        models.add(Model("policy", policy_config, device))
        if make_critic:
            models.add(Model("critic", critic_config, device))
        return models

    @staticmethod
    def infer_policy_probs(
        models: ModelSet,
        obs: torch.Tensor,
        action_masks: torch.Tensor,
        temperature: float = 1.0,
    ) -> torch.Tensor:
        return policy_probs(models, obs, action_masks, temperature)

    def infer_actions(
        self,
        obs: torch.Tensor,
        action_masks: torch.Tensor,
        models: Optional[ModelSet] = None,
    ) -> Tuple[torch.Tensor, Optional[torch.Tensor]]:
        """Pick actions for a batch of observations.

        Args:
            obs: Observations on the learner device
            action_masks: Action masks on the learner device
            models: Policy models to use (defaults to the learner's own)

        Returns:
            actions: shape (batch,)
            log_probs: shape (batch,), None in deterministic mode
        """
        if models is None:
            models = self.models
        with torch.no_grad():
            probs = policy_probs(models, obs, action_masks, self.config.policy_temperature)
            return sample_actions(probs, self.config.deterministic, self.generator)

    def infer_critic(self, obs: torch.Tensor) -> torch.Tensor:
        with torch.no_grad():
            shared_head = self.models.get("shared_head")
            if shared_head is not None:
                obs = shared_head(obs)
            return self.models["critic"](obs).flatten()

    def infer_critic_batched(self, obs: torch.Tensor, max_batch_size: int = 0) -> torch.Tensor:
        """Critic values for a large host tensor, returned on CPU.

        On an accelerator, chunks are copied through a prefetch pipeline so
        the copy of chunk i+1 overlaps inference on chunk i.
        """
        if max_batch_size <= 0:
            max_batch_size = DEFAULT_CRITIC_BATCH_SIZE

        total_rows = obs.shape[0]
        if total_rows <= max_batch_size or self.device.type == "cpu":
            return self.infer_critic(obs.to(self.device)).cpu()

        chunks = [
            ExperienceTensors(states=obs[start:start + max_batch_size])
            for start in range(0, total_rows, max_batch_size)
        ]

        results = []
        with BatchPipeline(self.device, name="critic-prefetch") as pipeline:
            pipeline.set_batches(chunks)
            pipeline.start_prefetch(0)
            for i in range(len(chunks)):
                pipeline.prefetch_next(i)
                results.append(self.infer_critic(pipeline.get_batch(i).states).cpu())
        return torch.cat(results)

    def learn(self, experience: ExperienceBuffer, report: Report, is_first_iteration: bool) -> None:
        """Run config.epochs of PPO updates over the buffer.

        Per-batch faults skip that batch's optimizer step. Any other failure
        is logged and the call returns without writing to the report.

        Args:
            experience: Buffer holding this iteration's rollout
            report: Receives loss/entropy/KL/update-magnitude metrics
            is_first_iteration: Skip parameter snapshots and loss metrics

        Raises:
            ConfigurationError: The learner is in deterministic mode
        """
        if self.config.deterministic:
            raise ConfigurationError("PPOLearner: cannot learn with deterministic actions enabled")

        self._stage = "init"
        self._last_action_stats = (0, 0, 0)
        try:
            results = self._learn(experience, is_first_iteration)
        except Exception:
            act_min, act_max, act_count = self._last_action_stats
            logger.exception(
                f"PPO learn recovered from exception at stage [{self._stage}], "
                f"last actions min/max/count: [{act_min}, {act_max}] / {act_count}"
            )
            self._empty_device_cache()
            return

        for key, value in results.items():
            report[key] = value

    def _learn(self, experience: ExperienceBuffer, is_first_iteration: bool) -> Dict[str, float]:
        config = self.config
        metrics: Dict[str, List[torch.Tensor]] = {}

        policy_before = critic_before = shared_head_before = None
        if not is_first_iteration:
            policy_before = self.models["policy"].copy_params()
            critic_before = self.models["critic"].copy_params()
            if "shared_head" in self.models:
                shared_head_before = self.models["shared_head"].copy_params()

        train_policy = config.policy_lr != 0
        train_critic = config.critic_lr != 0
        train_shared_head = "shared_head" in self.models and (train_policy or train_critic)

        for epoch in range(config.epochs):
            self._stage = "get_batches"
            batches = experience.get_all_batches_shuffled(config.batch_size, config.overbatching)
            self.pipeline.set_batches(batches)

            if self.device.type == "cuda" and batches:
                self.pipeline.start_prefetch(0)

            for batch_index in range(len(batches)):
                self._stage = "batch_loop"
                self.pipeline.prefetch_next(batch_index)
                batch = self.pipeline.get_batch(batch_index)

                self._prepare_batch(batch)

                result = self._run_minibatches(batch, train_policy, train_critic, metrics)
                if not result.ok:
                    act_min, act_max, act_count = self._last_action_stats
                    logger.warning(
                        f"PPO minibatch skipped due to exception: {result.message} | "
                        f"actions min/max: [{act_min}, {act_max}], rows: {act_count}"
                    )
                    self.models.zero_grads()
                    if result.device_related:
                        self._empty_device_cache()
                    continue

                self._stage = "optimizer_step"
                if train_policy:
                    nn.utils.clip_grad_norm_(self.models["policy"].parameters(), MAX_GRAD_NORM)
                if train_critic:
                    nn.utils.clip_grad_norm_(self.models["critic"].parameters(), MAX_GRAD_NORM)
                if train_shared_head:
                    nn.utils.clip_grad_norm_(self.models["shared_head"].parameters(), MAX_GRAD_NORM)

                self.models.step_optims()

            self.pipeline.wait_pending()

        self._stage = "report"
        means = {
            name: torch.stack(values).mean().item()
            for name, values in metrics.items()
            if values
        }

        results = {}
        for key, name in (("Policy Entropy", "entropy"), ("Mean KL Divergence", "kl")):
            if name in means:
                results[key] = means[name]

        if not is_first_iteration:
            for key, name in (
                ("Policy Loss", "policy_loss"),
                ("Critic Loss", "critic_loss"),
                ("Guiding Loss", "guiding_loss"),
                ("SB3 Clip Fraction", "clip_fraction"),
            ):
                if name in means:
                    results[key] = means[name]

            results["Policy Update Magnitude"] = (
                policy_before - self.models["policy"].copy_params()
            ).norm().item()
            results["Critic Update Magnitude"] = (
                critic_before - self.models["critic"].copy_params()
            ).norm().item()
            if shared_head_before is not None:
                results["Shared Head Update Magnitude"] = (
                    shared_head_before - self.models["shared_head"].copy_params()
                ).norm().item()

        return results

    def _prepare_batch(self, batch: ExperienceTensors) -> None:
        """Clamp actions and normalize advantages, in place on the batch copy."""
        self._stage = "prepare_batch"
        if batch.actions is not None and batch.actions.numel() > 0:
            self._last_action_stats = (
                int(batch.actions.min().item()),
                int(batch.actions.max().item()),
                batch.actions.numel(),
            )
            batch.actions.clamp_(0, self.num_actions - 1)
        else:
            self._last_action_stats = (0, 0, 0)

        advantages = batch.advantages
        if advantages is not None and advantages.numel() > 1:
            advantages.sub_(advantages.mean()).div_(advantages.std() + 1e-8)

    def _run_minibatches(
        self,
        batch: ExperienceTensors,
        train_policy: bool,
        train_critic: bool,
        metrics: Dict[str, List[torch.Tensor]],
    ) -> MinibatchResult:
        """Accumulate gradients over the minibatches of one batch.

        Diagnostics reach metrics only when every minibatch succeeded.
        """
        self._stage = "minibatch"
        rows = batch.states.shape[0] if batch.states is not None else self.config.batch_size
        bounds = minibatch_bounds(rows, self.config.mini_batch_size, split=self.device.type != "cpu")
        batch_metrics: Dict[str, List[torch.Tensor]] = {}
        try:
            for start, stop in bounds:
                self._run_minibatch(batch, start, stop, train_policy, train_critic, batch_metrics)
        except (RuntimeError, ValueError, IndexError) as e:
            return MinibatchResult.fault(e)

        for name, values in batch_metrics.items():
            metrics.setdefault(name, []).extend(values)
        return MinibatchResult()

    def _run_minibatch(
        self,
        batch: ExperienceTensors,
        start: int,
        stop: int,
        train_policy: bool,
        train_critic: bool,
        metrics: Dict[str, List[torch.Tensor]],
    ) -> None:
        config = self.config
        batch_size_ratio = (stop - start) / config.batch_size

        mb = batch.map(lambda t: t[start:stop].to(self.device, non_blocking=True))

        features = mb.states
        shared_head = self.models.get("shared_head")
        if shared_head is not None and (train_policy or train_critic):
            features = shared_head(mb.states)

        total_loss = None

        if train_policy:
            logits = self.models["policy"](features)
            probs = masked_probs(logits, mb.action_masks, config.policy_temperature)
            probs = probs.view(-1, self.num_actions)

            log_probs = probs.gather(-1, mb.actions.unsqueeze(-1)).squeeze(-1).log()
            entropy = compute_entropy(probs, mb.action_masks, config.mask_entropy)

            ratio = torch.exp(log_probs - mb.log_probs)
            clipped = ratio.clamp(1 - config.clip_range, 1 + config.clip_range)
            policy_loss = -torch.min(ratio * mb.advantages, clipped * mb.advantages).mean()

            ppo_loss = (policy_loss - entropy * config.entropy_scale) * batch_size_ratio

            if self.guiding_policy_models is not None:
                with torch.no_grad():
                    guiding_probs = policy_probs(
                        self.guiding_policy_models, mb.states, mb.action_masks, config.policy_temperature
                    )
                guiding_loss = (guiding_probs - probs).abs().mean()
                ppo_loss = ppo_loss + guiding_loss * config.guiding_strength
                metrics.setdefault("guiding_loss", []).append(guiding_loss.detach())

            with torch.no_grad():
                log_ratio = log_probs - mb.log_probs
                kl = (torch.exp(log_ratio) - 1 - log_ratio).mean()
                clip_fraction = ((ratio - 1).abs() > config.clip_range).float().mean()

            metrics.setdefault("entropy", []).append(entropy.detach())
            metrics.setdefault("policy_loss", []).append(policy_loss.detach())
            metrics.setdefault("kl", []).append(kl)
            metrics.setdefault("clip_fraction", []).append(clip_fraction)

            total_loss = ppo_loss

        if train_critic:
            values = self.models["critic"](features).flatten()
            critic_loss = F.mse_loss(values, mb.target_values) * batch_size_ratio
            metrics.setdefault("critic_loss", []).append(critic_loss.detach())
            total_loss = critic_loss if total_loss is None else total_loss + critic_loss

        if total_loss is not None:
            total_loss.backward()

    def transfer_learn(
        self,
        old_models: ModelSet,
        new_obs: torch.Tensor,
        old_obs: torch.Tensor,
        new_action_masks: torch.Tensor,
        old_action_masks: torch.Tensor,
        action_maps: Optional[torch.Tensor],
        report: Report,
        config: TransferLearnConfig,
    ) -> None:
        """Distill an old policy into the current one.

        Args:
            old_models: Policy models of the old agent
            new_obs: Observations in the current encoding
            old_obs: The same states in the old encoding
            new_action_masks: Masks for the current action set
            old_action_masks: Masks for the old action set
            action_maps: (batch, num_actions) index of the old action for each
                new action, or None when both action sets match
            report: Receives accuracy, loss, entropies and update magnitude
            config: Distillation settings
        """
        temperature = self.config.policy_temperature

        with torch.no_grad():
            old_probs = self.infer_policy_probs(old_models, old_obs, old_action_masks, temperature)
            report["Old Policy Entropy"] = compute_entropy(
                old_probs, old_action_masks, self.config.mask_entropy
            ).item()
            if action_maps is not None:
                old_probs = old_probs.gather(1, action_maps.long())

        for model in self.get_policy_models():
            model.set_lr(config.lr)

        policy_before = self.models["policy"].copy_params()

        for epoch in range(config.epochs):
            new_probs = self.infer_policy_probs(self.models, new_obs, new_action_masks, temperature)

            if config.use_kl_div:
                loss = (old_probs * torch.log(old_probs / new_probs)).abs()
            else:
                loss = (old_probs - new_probs).abs()
            loss = loss.pow(config.loss_exponent).mean() * config.loss_scale

            if epoch == 0:
                with torch.no_grad():
                    matching = new_probs.argmax(-1) == old_probs.argmax(-1)
                    report["Transfer Learn Accuracy"] = matching.float().mean().item()
                    report["Transfer Learn Loss"] = loss.item()
                    report["Policy Entropy"] = compute_entropy(
                        new_probs, new_action_masks, self.config.mask_entropy
                    ).item()

            loss.backward()
            self.models.step_optims()

        report["Policy Update Magnitude"] = (
            policy_before - self.models["policy"].copy_params()
        ).norm().item()

        self.set_learning_rates(self.config.policy_lr, self.config.critic_lr)

    def set_learning_rates(self, policy_lr: float, critic_lr: float) -> None:
        self.config.policy_lr = policy_lr
        self.config.critic_lr = critic_lr

        self.models["policy"].set_lr(policy_lr)
        self.models["critic"].set_lr(critic_lr)

        shared_head = self.models.get("shared_head")
        if shared_head is not None:
            shared_head.set_lr(min(policy_lr, critic_lr))

        logger.info(f"PPOLearner: set learning rate to [{policy_lr:.3e}, {critic_lr:.3e}]")

    def get_policy_models(self) -> ModelSet:
        """Every model except the critic."""
        return ModelSet([model for model in self.models if model.name != "critic"])

    def save_to(self, folder: Path) -> None:
        save_model_set(self.models, Path(folder))

    def load_from(self, folder: Path) -> None:
        folder = Path(folder)
        if not folder.is_dir():
            raise CheckpointError(f"PPOLearner: path {folder} is not a valid directory")

        load_model_set(self.models, folder, load_optims=True)

        # Loaded optimizer state carries the old learning rates
        self.set_learning_rates(self.config.policy_lr, self.config.critic_lr)

    def close(self) -> None:
        self.pipeline.close()

    def _empty_device_cache(self) -> None:
        if self.device.type == "cuda":
            torch.cuda.empty_cache()
