'''
verbatim replication of (already published) artefacts between repositories
'''

import json
import logging

import requests

import apko_oci.client as oc
import apko_oci.model as om
import apko_oci.util as ou

logger = logging.getLogger(__name__)


def replicate_artefact(
    src_image_reference: str | om.OciImageReference,
    tgt_image_reference: str | om.OciImageReference,
    oci_client: oc.Client,
) -> tuple[requests.Response, om.OciImageReference, bytes]:
    '''
    replicates the given artefact (single image, or image-index incl. all referenced images)
    from src_image_reference to tgt_image_reference. Manifests are replicated verbatim, so
    digests are retained. Blobs already present in the target repository are not re-uploaded.

    Only v2-manifests (OCI, or docker) are supported.
    '''
    src_image_reference = om.OciImageReference.to_image_ref(src_image_reference)
    tgt_image_reference = om.OciImageReference.to_image_ref(tgt_image_reference)

    # we need the unaltered manifest for verbatim replication
    raw_manifest = oci_client.manifest_raw(
        image_reference=src_image_reference,
        accept=om.MimeTypes.prefer_multiarch,
    ).content
    manifest_dict = json.loads(raw_manifest)

    if (schema_version := int(manifest_dict['schemaVersion'])) != 2:
        raise NotImplementedError(f'{schema_version=}')

    manifest = om.as_manifest(manifest_dict)

    if isinstance(manifest, om.OciImageManifestList):
        src_name = src_image_reference.ref_without_tag
        tgt_name = tgt_image_reference.ref_without_tag

        for sub_manifest in manifest.manifests:
            tgt_reference = f'{tgt_name}@{sub_manifest.digest}'
            logger.info(f'replicating to {tgt_reference=}')

            replicate_artefact(
                src_image_reference=f'{src_name}@{sub_manifest.digest}',
                tgt_image_reference=tgt_reference,
                oci_client=oci_client,
            )
    else:
        for blob in manifest.blobs():
            head_res = oci_client.head_blob(
                image_reference=tgt_image_reference,
                digest=blob.digest,
            )
            if head_res.ok:
                logger.info(f'skipping blob download {blob.digest=} - already exists in tgt')
                continue

            oci_client.put_blob(
                image_reference=tgt_image_reference,
                digest=blob.digest,
                octets_count=blob.size,
                data=oci_client.blob(
                    image_reference=src_image_reference,
                    digest=blob.digest,
                ),
            )

    res = oci_client.put_manifest(
        image_reference=tgt_image_reference,
        manifest=raw_manifest,
    )
    logger.info(f'replicated {src_image_reference} to {tgt_image_reference} '
        f'({ou.sha256_digest(raw_manifest)})')

    return res, tgt_image_reference, raw_manifest
