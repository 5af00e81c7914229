'''
publishing of images and image-indexes, either to a local store (docker-daemon), or to
remote OCI-registries.

For remote publishing, peripherals (i.e. attached SBOMs) are always written before the artefact
itself, so that (once the artefact is visible) its peripherals are also available. Tags are
processed sequentially, in the order they were passed; the first failure aborts the publishing.
'''

import collections.abc
import logging
import os
import typing

import apko_oci.artefact as oa
import apko_oci.auth
import apko_oci.client as oc
import apko_oci.config as oconf
import apko_oci.image as oimg
import apko_oci.index as oidx
import apko_oci.model as om
import apko_oci.retry as oretry
import apko_oci.sbom as osbom
import apko_oci.store as ostore
import apko_oci.util as ou

logger = logging.getLogger(__name__)

LOCAL_DOMAIN = 'apko.local'
LOCAL_REPOSITORY = 'cache'
DEFAULT_TAG = 'latest'
SBOM_TAG_SUFFIX = 'sbom'


def local_cache_reference(digest: str) -> om.OciImageReference:
    return om.OciImageReference(
        f'{LOCAL_DOMAIN}/{LOCAL_REPOSITORY}:{ou.digest_hex(digest)}',
    )


def parse_reference(
    image_reference: str | om.OciImageReference,
) -> om.OciImageReference:
    '''
    parses the given image-reference. References w/o tag (or digest) default to `latest`.

    raises PublishError if the reference cannot be parsed.
    '''
    try:
        image_reference = om.OciImageReference.to_image_ref(image_reference)
        ou.validate_image_reference(image_reference.original_image_reference)
    except ValueError as ve:
        raise om.PublishError(f'unable to parse reference {image_reference!r}: {ve}') from ve

    if not image_reference.has_tag:
        image_reference = image_reference.with_tag(DEFAULT_TAG)

    return image_reference


def digest_reference(
    image_reference: om.OciImageReference,
    digest: str,
) -> om.OciImageReference:
    return om.OciImageReference(f'{image_reference.ref_without_tag}@{digest}')


def sbom_reference(
    image_reference: om.OciImageReference,
    digest: str,
    sbom_repository: om.OciImageReference | None=None,
) -> om.OciImageReference:
    '''
    returns the (cosign-style) reference the SBOM of the artefact w/ the given digest is
    written to: `<repository>:sha256-<hex>.sbom`. If passed, sbom_repository is used instead of
    the artefact's repository.
    '''
    algorithm, hexdigest = digest.split(':', 1)
    repository = sbom_repository or image_reference

    return om.OciImageReference(
        f'{repository.ref_without_tag}:{algorithm}-{hexdigest}.{SBOM_TAG_SUFFIX}'
    )


class Publisher:
    def __init__(
        self,
        oci_client: oc.Client | None=None,
        local_store: ostore.LocalStore | None=None,
        retry_policy: oretry.RetryPolicy=oretry.RetryPolicy(),
        sbom_repository: om.OciImageReference | None=None,
        native_platform: tuple[str, str]=(
            oconf.DEFAULT_NATIVE_OS,
            oconf.DEFAULT_NATIVE_ARCH,
        ),
    ):
        self.oci_client = oci_client
        self.local_store = local_store
        self.retry_policy = retry_policy
        self.sbom_repository = sbom_repository
        self.native_platform = native_platform

    @staticmethod
    def from_env(
        environ: typing.Mapping[str, str]=None,
        oci_client: oc.Client | None=None,
        local_store: ostore.LocalStore | None=None,
        retry_policy: oretry.RetryPolicy=oretry.RetryPolicy(),
    ) -> 'Publisher':
        '''
        creates a publisher w/ defaults read from environment (native platform, SBOM-repository,
        credentials for a default registry-client).
        '''
        if environ is None:
            environ = os.environ

        if not oci_client:
            oci_client = oc.Client(
                credentials_lookup=apko_oci.auth.default_credentials_lookup(),
            )
        if not local_store:
            local_store = ostore.DockerDaemonStore()

        return Publisher(
            oci_client=oci_client,
            local_store=local_store,
            retry_policy=retry_policy,
            sbom_repository=oconf.sbom_target_repository(environ=environ),
            native_platform=oconf.native_platform(environ=environ),
        )

    def _client(self) -> oc.Client:
        if not self.oci_client:
            raise om.PublishError('no registry-client configured for remote publishing')
        return self.oci_client

    def _store(self) -> ostore.LocalStore:
        if not self.local_store:
            raise om.PublishError('no local store configured for local publishing')
        return self.local_store

    def _write_blobs(
        self,
        image_reference: om.OciImageReference,
        artefact: oa.Artefact,
    ):
        client = self._client()
        for blob in artefact.blobs():
            with blob.open() as data:
                client.put_blob(
                    image_reference=image_reference,
                    digest=blob.ref.digest,
                    octets_count=blob.ref.size,
                    data=data,
                )

    def _write_artefact(
        self,
        image_reference: om.OciImageReference,
        artefact: oa.Artefact,
    ):
        '''
        writes the given artefact to the given reference: child-manifests (by digest) first,
        then blobs, then the artefact's manifest.
        '''
        for child in artefact.children():
            self._write_artefact(
                image_reference=digest_reference(image_reference, child.digest()),
                artefact=child,
            )

        self._write_blobs(image_reference=image_reference, artefact=artefact)

        self._client().put_manifest(
            image_reference=image_reference,
            manifest=artefact.raw_manifest(),
        )

    def _with_retry(self, function: typing.Callable[[], None], description: str):
        try:
            self.retry_policy(function, description=description)
        except om.ApkoOciError:
            raise
        except Exception as e:
            raise om.PublishError(f'{description}: {e}') from e

    def write_peripherals(
        self,
        image_reference: om.OciImageReference,
        artefact: oa.Artefact,
    ):
        '''
        writes peripherals (currently: SBOMs) of the given artefact and (recursively) of its
        children. Artefacts w/o SBOM are silently skipped.
        '''
        for child in artefact.children():
            self.write_peripherals(image_reference=image_reference, artefact=child)

        if sbom := artefact.attachment(osbom.SBOM_ATTACHMENT_NAME):
            sbom_ref = sbom_reference(
                image_reference=image_reference,
                digest=artefact.digest(),
                sbom_repository=self.sbom_repository,
            )
            logger.info(f'writing sbom to {sbom_ref}')

            self._with_retry(
                lambda: self._write_artefact(image_reference=sbom_ref, artefact=sbom),
                description=f'writing sbom to {sbom_ref}',
            )

        self.write_signatures(image_reference=image_reference, artefact=artefact)

    def write_signatures(
        self,
        image_reference: om.OciImageReference,
        artefact: oa.Artefact,
    ):
        # signing is not implemented; artefacts never carry signatures or attestations
        logger.debug(f'not writing signatures for {artefact.digest()} ({image_reference})')

    def _publish_remote(
        self,
        artefact: oa.Artefact,
        tags: collections.abc.Iterable[str | om.OciImageReference],
    ) -> om.OciImageReference:
        digest = artefact.digest()
        published = []
        result = None

        for tag in tags:
            logger.info(f'publishing {artefact.kind.value} tag {tag}')
            try:
                image_reference = parse_reference(tag)

                self.write_peripherals(image_reference=image_reference, artefact=artefact)

                self._with_retry(
                    lambda: self._write_artefact(
                        image_reference=image_reference,
                        artefact=artefact,
                    ),
                    description=f'publishing {image_reference}',
                )
            except om.PublishError as pe:
                pe.published = tuple(published)
                raise pe
            except om.ApkoOciError as e:
                raise om.PublishError(
                    f'publishing {tag}: {e}',
                    published=tuple(published),
                ) from e

            result = digest_reference(image_reference, digest)
            published.append(result)

        if not result:
            raise om.PublishError('no tags passed')

        return result

    def _publish_local(
        self,
        image: oimg.Image,
        tags: collections.abc.Iterable[str | om.OciImageReference],
    ) -> om.OciImageReference:
        digest = image.digest()
        local_ref = local_cache_reference(digest)
        result = None

        for tag in tags:
            image_reference = parse_reference(tag)

            logger.info(f'saving {image.media_kind.human_readable} image locally: {local_ref}')
            try:
                response = self._store().write(tag=local_ref, image=image)
            except ostore.LocalStoreError as lse:
                logger.error(f'local store error: {ou.sanitise_newlines(lse.response)}')
                raise om.PublishError(f'failed to save image locally: {lse}') from lse
            logger.debug(f'local store response: {ou.sanitise_newlines(response)}')

            result = digest_reference(image_reference, digest)

        if not result:
            raise om.PublishError('no tags passed')

        return result

    def publish_image(
        self,
        image: oimg.Image,
        tags: collections.abc.Iterable[str | om.OciImageReference],
        local: bool=False,
    ) -> om.OciImageReference:
        '''
        publishes the given image under all given tags, and returns a digest-reference to the
        published image (using the repository of the last tag).

        if local is truthy, the image is written to the local store (as
        `apko.local/cache:<digest-hex>`) instead.
        '''
        if image is None:
            raise om.PublishError('no image to publish')

        if local:
            return self._publish_local(image=image, tags=tags)
        return self._publish_remote(artefact=image, tags=tags)

    def _promote_native(
        self,
        index: oidx.Index,
        tags: collections.abc.Sequence[str | om.OciImageReference],
    ) -> om.OciImageReference:
        '''
        tags the (previously locally published) image matching the native platform under all
        given tags. If there is no such image, nothing is tagged, and a digest-reference to the
        index is returned.
        '''
        os_name, architecture = self.native_platform
        image_references = [parse_reference(tag) for tag in tags]
        if not image_references:
            raise om.PublishError('no tags passed')

        if not (entry := oidx.native_manifest(
            index=index,
            os_name=os_name,
            architecture=architecture,
        )):
            logger.warning(
                f'no image for native platform {os_name}/{architecture} in index - '
                'not tagging any local images'
            )
            return digest_reference(image_references[-1], index.digest())

        local_src_ref = local_cache_reference(entry.digest)
        logger.info(
            f'using native single-arch image for local tags: {local_src_ref} '
            f'({os_name}/{architecture})'
        )

        for image_reference in image_references:
            logger.info(f'tagging local image {local_src_ref} as {image_reference}')
            try:
                self._store().tag(src=local_src_ref, tgt=image_reference)
            except ostore.LocalStoreError as lse:
                logger.error(f'local store error: {ou.sanitise_newlines(lse.response)}')
                raise om.PublishError(
                    f'failed to tag {local_src_ref} as {image_reference}: {lse}'
                ) from lse

        return om.OciImageReference(f'{local_src_ref}@{entry.digest}')

    def publish_index(
        self,
        index: oidx.Index,
        tags: collections.abc.Sequence[str | om.OciImageReference],
        local: bool=False,
    ) -> om.OciImageReference:
        '''
        publishes the given index (incl. all referenced images) under all given tags, and
        returns a digest-reference to it.

        if local is truthy, the image matching the native platform (which is expected to have
        been published locally before) is tagged w/ the given tags instead.
        '''
        if index is None:
            raise om.PublishError('no index to publish')

        if local:
            return self._promote_native(index=index, tags=tags)
        return self._publish_remote(artefact=index, tags=tags)

    def post_attach_sbom(
        self,
        artefact: oa.Artefact,
        tags: collections.abc.Iterable[str | om.OciImageReference],
    ) -> oa.Artefact:
        '''
        writes the peripherals of an (already published) artefact for each of the given tags,
        without re-publishing the artefact itself.
        '''
        published = []
        for tag in tags:
            image_reference = parse_reference(tag)
            try:
                self.write_peripherals(image_reference=image_reference, artefact=artefact)
            except om.PublishError as pe:
                pe.published = tuple(published)
                raise pe
            published.append(digest_reference(image_reference, artefact.digest()))

        return artefact
