"""Image generation for the ``generateImage`` tool."""

import logging
from typing import Any

from graphrunner.graph.run_state import FileRef
from graphrunner.llm.provider import ImageModel
from graphrunner.tools.files import FileStore

logger = logging.getLogger(__name__)


async def generate_and_save_image(
    image_model: ImageModel,
    store: FileStore,
    run_id: str,
    node_id: str | None,
    prompt: str,
    filename: str = "image.png",
    model: str | None = None,
    size: str | None = None,
    **options: Any,
) -> FileRef:
    """
    Generate an image and store it as a generated file of the run.

    The returned FileRef's metadata records the prompt, the generation
    options, the model's revised prompt and any warnings.
    """
    image = await image_model.generate(prompt, model=model, size=size, **options)
    ref = await store.write_bytes(
        run_id,
        node_id,
        image.data,
        filename=filename,
        media_type=image.media_type,
        metadata={
            "prompt": prompt,
            "model": image.model,
            "size": size,
            **options,
            "revised_prompt": image.revised_prompt,
            "warnings": image.warnings,
        },
    )
    logger.info(f"Generated image {ref.id} ({ref.bytes} bytes) with {image.model}")
    return ref
