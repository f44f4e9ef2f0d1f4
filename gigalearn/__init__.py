# GigaLearn - PPO experience pipeline and update engine

__version__ = "0.1.0"
