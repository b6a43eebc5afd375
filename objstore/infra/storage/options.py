"""Per-operation options.

Every operation has a marker class its options must inherit from, so
``bucket.upload(obj, WithVersion("1"))`` is rejected by a type checker and by
the fold functions at runtime. Options fold left over a fresh options struct:
later options overwrite fields set by earlier ones.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, TypeVar

from objstore.infra.storage.types import Preconditions, UploadAttrs


class DownloadOption:
    """Marker for options accepted by ``Bucket.download``."""

    __slots__ = ()

    def apply_download(self, opts: "DownloadOptions") -> None:
        raise NotImplementedError


class UploadOption:
    """Marker for options accepted by ``Bucket.upload``."""

    __slots__ = ()

    def apply_upload(self, opts: "UploadOptions") -> None:
        raise NotImplementedError


class ListOption:
    """Marker for options accepted by ``Bucket.list``."""

    __slots__ = ()

    def apply_list(self, opts: "ListOptions") -> None:
        raise NotImplementedError


class RemoveOption:
    """Marker for options accepted by ``Bucket.remove``."""

    __slots__ = ()

    def apply_remove(self, opts: "RemoveOptions") -> None:
        raise NotImplementedError


class AttrsOption:
    """Marker for options accepted by ``Bucket.attrs``."""

    __slots__ = ()

    def apply_attrs(self, opts: "AttrsOptions") -> None:
        raise NotImplementedError


class ExistsOption:
    """Marker for options accepted by ``Bucket.exists``."""

    __slots__ = ()

    def apply_exists(self, opts: "ExistsOptions") -> None:
        raise NotImplementedError


@dataclass(slots=True)
class DownloadOptions:
    version: str = ""


@dataclass(slots=True)
class UploadOptions:
    attrs: UploadAttrs = field(default_factory=UploadAttrs)
    pre: Preconditions = field(default_factory=Preconditions)


@dataclass(slots=True)
class ListOptions:
    pass


@dataclass(slots=True)
class RemoveOptions:
    version: str = ""


@dataclass(slots=True)
class AttrsOptions:
    version: str = ""


@dataclass(slots=True)
class ExistsOptions:
    version: str = ""


@dataclass(frozen=True, slots=True)
class WithVersion(DownloadOption, RemoveOption, AttrsOption, ExistsOption):
    """Perform the operation against the given version of the object.

    An empty version targets the live version.
    """

    version: str

    def apply_download(self, opts: DownloadOptions) -> None:
        opts.version = self.version

    def apply_remove(self, opts: RemoveOptions) -> None:
        opts.version = self.version

    def apply_attrs(self, opts: AttrsOptions) -> None:
        opts.version = self.version

    def apply_exists(self, opts: ExistsOptions) -> None:
        opts.version = self.version


@dataclass(frozen=True, slots=True)
class WithPreconditions(UploadOption):
    """Only upload the object if the preconditions hold."""

    pre: Preconditions

    def apply_upload(self, opts: UploadOptions) -> None:
        opts.pre = self.pre


@dataclass(frozen=True, slots=True)
class WithUploadAttrs(UploadOption):
    """Set additional object attributes during upload."""

    attrs: UploadAttrs

    def apply_upload(self, opts: UploadOptions) -> None:
        opts.attrs = UploadAttrs(content_type=self.attrs.content_type)


_Option = TypeVar("_Option")


def _checked(options: Iterable[object], marker: type[_Option], operation: str) -> Iterable[_Option]:
    for option in options:
        if not isinstance(option, marker):
            raise TypeError(
                f"{type(option).__name__} is not a valid option for {operation}"
            )
        yield option


def fold_download(options: Iterable[DownloadOption]) -> DownloadOptions:
    opts = DownloadOptions()
    for option in _checked(options, DownloadOption, "download"):
        option.apply_download(opts)
    return opts


def fold_upload(options: Iterable[UploadOption]) -> UploadOptions:
    opts = UploadOptions()
    for option in _checked(options, UploadOption, "upload"):
        option.apply_upload(opts)
    return opts


def fold_list(options: Iterable[ListOption]) -> ListOptions:
    opts = ListOptions()
    for option in _checked(options, ListOption, "list"):
        option.apply_list(opts)
    return opts


def fold_remove(options: Iterable[RemoveOption]) -> RemoveOptions:
    opts = RemoveOptions()
    for option in _checked(options, RemoveOption, "remove"):
        option.apply_remove(opts)
    return opts


def fold_attrs(options: Iterable[AttrsOption]) -> AttrsOptions:
    opts = AttrsOptions()
    for option in _checked(options, AttrsOption, "attrs"):
        option.apply_attrs(opts)
    return opts


def fold_exists(options: Iterable[ExistsOption]) -> ExistsOptions:
    opts = ExistsOptions()
    for option in _checked(options, ExistsOption, "exists"):
        option.apply_exists(opts)
    return opts
