"""Image values, layers, mutation and registry round-trips."""

from .layer import Layer, RemoteLayer, layer_from_paths
from .models import Image, empty_image
from .mutate import append_layer, apply_config, build, parse_env
from .remote import fetch_image, push_image, resolve

__all__ = [
    "Image",
    "Layer",
    "RemoteLayer",
    "append_layer",
    "apply_config",
    "build",
    "empty_image",
    "fetch_image",
    "layer_from_paths",
    "parse_env",
    "push_image",
    "resolve",
]
