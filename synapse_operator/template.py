import json

import jinja2
import yaml

from .config import settings


class Loader:
    """
    Class for returning objects created by rendering YAML templates from this package.
    """
    def __init__(self, **globals):
        # Create the package loader for the parent module of this one
        loader = jinja2.PackageLoader(self.__module__.rsplit(".", maxsplit = 1)[0])
        self.env = jinja2.Environment(
            loader = loader,
            autoescape = False,
            undefined = jinja2.StrictUndefined
        )
        self.env.globals.update(globals)
        # Make a toyaml filter available
        self.env.filters["toyaml"] = yaml.safe_dump
        # Values interpolated into YAML are emitted as JSON, which is also valid YAML
        self.env.filters["quote"] = json.dumps

    def render(self, template, **params):
        """
        Render the specified template with the given params and return the text.
        """
        return self.env.get_template(template).render(**params)

    def load(self, template, **params):
        """
        Render the specified template with the given params, load the result as
        YAML and return it.
        """
        return yaml.safe_load(self.render(template, **params))


default_loader = Loader(settings = settings)
