# Copyright (c) Microsoft Corporation.
# Licensed under the MIT License.

import dataclasses
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Protocol


@dataclass
class HttpSettings:
    """Settings to use while opening an event stream.

    This should include the settings necessary to authenticate with the endpoint.
    """

    url: str
    headers: dict[str, str]


class RequestCustomization(Protocol):
    def __call__(self, settings: HttpSettings) -> HttpSettings:
        """Returns the settings to use for the next connection attempt."""
        ...


def with_headers(headers: Mapping[str, str]) -> RequestCustomization:
    return lambda settings: dataclasses.replace(
        settings, headers={**settings.headers, **headers}
    )


def with_bearer_token(key: str) -> RequestCustomization:
    return with_headers({"Authorization": f"Bearer {key}"})
