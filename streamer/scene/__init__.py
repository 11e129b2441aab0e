from streamer.scene.commands import CommandHandler, CommandQueue
from streamer.scene.renderer import SceneRenderer, SceneState

__all__ = ["CommandHandler", "CommandQueue", "SceneRenderer", "SceneState"]
