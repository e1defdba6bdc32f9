"""Static catalog of upstream providers and the models each one serves.

Shared by the gateway (which attaches server-held keys) and by the client
controller's direct path (which attaches the user's own key).
"""

from dataclasses import dataclass

BIGMODEL = "bigmodel"
DEEPSEEK = "deepseek"

CHAT_COMPLETIONS_PATH = "/chat/completions"
IMAGE_GENERATIONS_PATH = "/images/generations"


@dataclass(frozen=True)
class ModelInfo:
    id: str
    name: str
    provider: str


CHAT_MODELS: tuple[ModelInfo, ...] = (
    ModelInfo("glm-4.7", "GLM-4.7", BIGMODEL),
    ModelInfo("glm-4.7-flash", "GLM-4.7-Flash", BIGMODEL),
    ModelInfo("glm-4.7-flashx", "GLM-4.7-FlashX", BIGMODEL),
    ModelInfo("deepseek-chat", "DeepSeek-Chat", DEEPSEEK),
    ModelInfo("deepseek-reasoner", "DeepSeek-Reasoner", DEEPSEEK),
)

# Provider name -> model used when an alias route receives no model
DEFAULT_CHAT_MODEL = {
    BIGMODEL: "glm-4.7",
    DEEPSEEK: "deepseek-chat",
}

# Route aliases kept from the mini-program's original endpoints
PROVIDER_ALIASES = {
    "glm": BIGMODEL,
    BIGMODEL: BIGMODEL,
    DEEPSEEK: DEEPSEEK,
}

DEFAULT_BASE_URLS = {
    BIGMODEL: "https://open.bigmodel.cn/api/paas/v4",
    DEEPSEEK: "https://api.deepseek.com/v1",
}

# Image generation is served by BigModel only
IMAGE_PROVIDER = BIGMODEL


def find_chat_model(model_id: str) -> ModelInfo | None:
    for model in CHAT_MODELS:
        if model.id == model_id:
            return model
    return None


def canonical_provider(name: str) -> str | None:
    return PROVIDER_ALIASES.get(name.lower())
