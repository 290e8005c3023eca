"""
Integration with Replicate for character-consistent storybook illustrations.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Iterable as IterableABC
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from contextlib import ExitStack
from pathlib import Path
from typing import Any, BinaryIO, Callable, Sequence

import replicate

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "bytedance/seedream-4.5"


def _build_seedream_input(
    *,
    prompt: str,
    negative_prompt: str,
    seed: int,
    aspect_ratio: str,
    image_input: Sequence[str | BinaryIO],
) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "prompt": prompt,
        "negative_prompt": negative_prompt,
        "seed": seed,
        "aspect_ratio": aspect_ratio,
        "output_format": "webp",
        "output_quality": 95,
        "sequential_image_generation": "disabled",
        "max_images": 1,
    }
    if image_input:
        payload["image_input"] = list(image_input)
    return payload


def _build_flux_kontext_input(
    *,
    prompt: str,
    negative_prompt: str,
    seed: int,
    aspect_ratio: str,
    image_input: Sequence[str | BinaryIO],
) -> dict[str, Any]:
    # Kontext conditions on a single image; only the first reference is used.
    payload: dict[str, Any] = {
        "prompt": f"{prompt}\nAVOID: {negative_prompt}",
        "seed": seed,
        "aspect_ratio": aspect_ratio,
        "output_format": "png",
        "safety_tolerance": 2,
        "prompt_upsampling": False,
    }
    if image_input:
        payload["input_image"] = image_input[0]
    return payload


_MODEL_INPUT_BUILDERS: dict[str, Callable[..., dict[str, Any]]] = {
    "bytedance/seedream-4": _build_seedream_input,
    "bytedance/seedream-4.5": _build_seedream_input,
    "black-forest-labs/flux-kontext-pro": _build_flux_kontext_input,
}


def _build_replicate_input_payload(
    *,
    model_identifier: str,
    prompt: str,
    negative_prompt: str,
    seed: int,
    aspect_ratio: str,
    image_input: Sequence[str | BinaryIO],
) -> dict[str, Any]:
    normalized_identifier = model_identifier.strip().lower()
    builder = _MODEL_INPUT_BUILDERS.get(normalized_identifier)
    if builder is None and ":" in normalized_identifier:
        base_identifier = normalized_identifier.split(":", maxsplit=1)[0]
        builder = _MODEL_INPUT_BUILDERS.get(base_identifier)
    if builder is None:
        supported_models = ", ".join(sorted(set(_MODEL_INPUT_BUILDERS)))
        raise ValueError(
            "Model identifier "
            f"'{model_identifier}' is not configured with a default input payload. "
            f"Supported models: {supported_models}."
        )

    return builder(
        prompt=prompt,
        negative_prompt=negative_prompt,
        seed=seed,
        aspect_ratio=aspect_ratio,
        image_input=image_input,
    )


class ReplicateImageGenerator:
    """
    Convenience wrapper around the Replicate client for illustration generation.

    Parameters
    ----------
    api_token:
        Replicate API token. Falls back to ``REPLICATE_API_TOKEN`` environment variable.
    model_identifier:
        Model string in the ``owner/model[:version]`` format. Falls back to
        ``REPLICATE_MODEL`` and then to ``bytedance/seedream-4.5``.
    client:
        Optional pre-configured :class:`replicate.Client`. Mainly useful for testing.
    timeout:
        Default seconds one generation may take before it is abandoned. Falls back
        to ``REPLICATE_TIMEOUT``; unset means no limit.
    """

    def __init__(
        self,
        *,
        api_token: str | None = None,
        model_identifier: str | None = None,
        client: replicate.Client | None = None,
        timeout: float | None = None,
    ) -> None:
        self._api_token = api_token or os.getenv("REPLICATE_API_TOKEN")
        if not self._api_token and not client:
            raise ValueError(
                "Replicate API token is required. Set REPLICATE_API_TOKEN or pass api_token."
            )

        self._model_identifier = model_identifier or os.getenv("REPLICATE_MODEL") or DEFAULT_MODEL
        self._client = client or replicate.Client(api_token=self._api_token)
        env_timeout = os.getenv("REPLICATE_TIMEOUT")
        self._timeout = timeout if timeout is not None else (float(env_timeout) if env_timeout else None)

    @property
    def model_identifier(self) -> str:
        """Return the model identifier currently used."""
        return self._model_identifier

    def generate_image(
        self,
        *,
        prompt: str,
        negative_prompt: str,
        seed: int,
        aspect_ratio: str = "3:4",
        reference_images: Sequence[str | Path | BinaryIO] = (),
        timeout: float | None = None,
        **model_kwargs: Any,
    ) -> str:
        """
        Run the configured model once and return the first image URL.

        Parameters
        ----------
        prompt:
            Positive prompt.
        negative_prompt:
            Negative prompt, passed through unchanged.
        seed:
            Image seed; never part of the prompt text.
        aspect_ratio:
            Output aspect ratio such as ``"3:4"``.
        reference_images:
            Ordered references (URLs, paths or file objects). Order must match the
            ``[reference image i]`` markers in the prompt.
        timeout:
            Seconds to wait for the prediction. Overrides the constructor default.
        **model_kwargs:
            Additional keyword arguments forwarded directly to the Replicate model invocation.

        Returns
        -------
        str
            URL of the generated image.
        """
        with ExitStack() as stack:
            image_input = [_prepare_image_input(item, stack=stack) for item in reference_images]

            replicate_input = _build_replicate_input_payload(
                model_identifier=self._model_identifier,
                prompt=prompt,
                negative_prompt=negative_prompt,
                seed=seed,
                aspect_ratio=aspect_ratio,
                image_input=image_input,
            )
            replicate_input.update(model_kwargs)

            logger.debug("Replicate input for %s: %s", self._model_identifier, replicate_input)
            output = self._run(replicate_input, timeout if timeout is not None else self._timeout)

        urls = normalize_image_outputs(output)
        if not urls:
            raise RuntimeError("Image model returned no output URL.")
        return urls[0]

    def _run(self, replicate_input: dict[str, Any], timeout: float | None) -> Any:
        if timeout is None:
            return self._client.run(self._model_identifier, input=replicate_input)

        pool = ThreadPoolExecutor(max_workers=1)
        future = pool.submit(self._client.run, self._model_identifier, input=replicate_input)
        try:
            return future.result(timeout=timeout)
        except FutureTimeoutError as exc:
            future.cancel()
            raise TimeoutError(
                f"Image model {self._model_identifier} did not finish within {timeout:.0f}s."
            ) from exc
        finally:
            pool.shutdown(wait=False)


def _prepare_image_input(
    input_image: str | Path | BinaryIO,
    *,
    stack: ExitStack,
) -> str | BinaryIO:
    """
    Normalize the image input so Replicate can consume it, keeping resources open via ExitStack.
    """
    if hasattr(input_image, "read"):
        return input_image  # type: ignore[return-value]

    if isinstance(input_image, Path):
        input_path = input_image.expanduser()
    else:
        input_candidate = str(input_image)
        if input_candidate.lower().startswith(("http://", "https://", "data:")):
            return input_candidate
        input_path = Path(input_candidate).expanduser()

    if not input_path.exists():
        raise FileNotFoundError(f"Input image not found at '{input_path}'.")

    return stack.enter_context(input_path.open("rb"))


def normalize_image_outputs(raw: Any) -> list[str]:
    """
    Normalize the image outputs returned by Replicate into a list of URL strings.

    Handles a bare string, a list, and file-output objects exposing ``url``.
    """
    if raw is None:
        return []

    if isinstance(raw, str):
        return [raw] if raw else []

    if isinstance(raw, bytes):
        return [raw.decode("utf-8", errors="ignore")]

    url = getattr(raw, "url", None)
    if url is not None:
        return [str(url() if callable(url) else url)]

    if isinstance(raw, IterableABC):
        collected = list(raw)
        if collected and all(isinstance(item, str) and len(item) == 1 for item in collected):
            return ["".join(collected)]

        normalized: list[str] = []
        for item in collected:
            normalized.extend(normalize_image_outputs(item))
        return normalized

    return [str(raw)]
