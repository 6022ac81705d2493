from .config import settings


async def ekresource_for_model(client, model, subresource = None):
    """
    Returns an easykube resource for the given model.
    """
    api = client.api(f"{settings.api_group}/{model._meta.version}")
    resource = model._meta.plural_name
    if subresource:
        resource = f"{resource}/{subresource}"
    return await api.resource(resource)


def merge_patch(source, target, prune = True):
    """
    Returns a JSON merge patch (RFC 7386) that transforms source into target.

    When prune is true, keys that are in source but not in target are set to None,
    which removes them. Otherwise they are left alone. Values that are not both
    dictionaries are replaced wholesale.
    """
    patch = {}
    for key, value in target.items():
        if key not in source:
            patch[key] = value
        elif isinstance(value, dict) and isinstance(source[key], dict):
            nested = merge_patch(source[key], value, prune)
            if nested:
                patch[key] = nested
        elif value != source[key]:
            patch[key] = value
    if prune:
        for key in sorted(source.keys() - target.keys()):
            patch[key] = None
    return patch
