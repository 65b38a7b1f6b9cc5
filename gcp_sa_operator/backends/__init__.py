from .backend import AccountRef, IAMBackend, KeyMaterial, KeyRecord
from .google import GoogleCloudIAM

SUPPORTED_BACKENDS = {
    "google": GoogleCloudIAM,
}


def get_backend(name, config, **kwargs):
    backend_class = SUPPORTED_BACKENDS.get(name.lower())
    if not backend_class:
        raise ValueError(f"Unsupported backend: {name}")
    return backend_class(config, **kwargs)
