import argparse
import datetime
import logging
import os
import sys
import textwrap

import apko_oci
import apko_oci.auth
import apko_oci.client
import apko_oci.config
import apko_oci.log
import apko_oci.model
import apko_oci.platform
import apko_oci.publish
import apko_oci.sbom

logger = logging.getLogger(__name__)


def _oci_client(parsed):
    docker_cfg = parsed.docker_cfg
    if docker_cfg and not os.path.exists(docker_cfg):
        print(f'Error: not an existing file: {docker_cfg=}')
        exit(1)

    # if user did _not_ pass-in docker-cfg, fallback to defaults (or anonymous authentication)
    return apko_oci.client.Client(
        credentials_lookup=apko_oci.auth.multi_credentials_lookup(
            apko_oci.auth.docker_credentials_lookup(
                docker_cfg=docker_cfg,
                absent_ok=True,
            ),
            apko_oci.auth.github_credentials_lookup(),
        ),
    )


def _image_configuration(parsed) -> apko_oci.config.ImageConfiguration:
    if not parsed.config:
        return apko_oci.config.ImageConfiguration()
    return apko_oci.config.load_image_configuration(parsed.config)


def _build_options(parsed) -> apko_oci.config.BuildOptions:
    return apko_oci.config.BuildOptions(
        source_date_epoch=datetime.datetime.fromtimestamp(
            parsed.source_date_epoch,
            tz=datetime.timezone.utc,
        ),
        arch=apko_oci.platform.Architecture.parse(parsed.arch),
        use_docker_media_types=parsed.docker_media_types,
        sbom_path=parsed.sbom_path,
        sbom_formats=tuple(parsed.sbom_format or ()),
    )


def build(parsed):
    options = _build_options(parsed)

    apko_oci.build_image_tarball(
        image_ref=parsed.tag,
        layer_path=parsed.layer,
        output_path=parsed.output,
        image_configuration=_image_configuration(parsed),
        options=options,
    )


def publish(parsed):
    options = _build_options(parsed)

    if options.use_docker_media_types:
        publish_image = apko_oci.publish_docker_image
    else:
        publish_image = apko_oci.publish_image

    publisher = apko_oci.publish.Publisher.from_env(
        oci_client=_oci_client(parsed),
    )

    reference, _ = publish_image(
        layer_path=parsed.layer,
        image_configuration=_image_configuration(parsed),
        created=options.source_date_epoch,
        arch=options.arch,
        tags=parsed.tag,
        sbom_path=options.sbom_path,
        sbom_formats=options.sbom_formats,
        local=parsed.local,
        publisher=publisher,
    )

    print(reference)


def copy(parsed):
    apko_oci.copy(
        src=parsed.src,
        dst=parsed.dst,
        oci_client=_oci_client(parsed),
    )


def _add_build_arguments(parser: argparse.ArgumentParser):
    parser.add_argument('layer', help='path to gzip-compressed layer-archive')
    parser.add_argument(
        '--config', '-c',
        required=False,
        default=None,
        help='path to image-configuration (YAML)',
    )
    parser.add_argument(
        '--arch',
        required=False,
        default='amd64',
        help='target architecture (OCI- or apk-style, e.g. amd64, x86_64, arm/v7)',
    )
    parser.add_argument(
        '--docker-media-types',
        action='store_true',
        default=False,
    )
    parser.add_argument(
        '--source-date-epoch',
        type=int,
        default=int(os.environ.get('SOURCE_DATE_EPOCH', 0)),
        help='creation-timestamp (seconds since epoch); defaults to $SOURCE_DATE_EPOCH, or 0',
    )
    parser.add_argument('--sbom-path', required=False, default=None)
    parser.add_argument(
        '--sbom-format',
        action='append',
        choices=[f.value for f in apko_oci.sbom.SbomFormat],
        help='may be passed multiple times (only first format is attached)',
    )


def main():
    parser = argparse.ArgumentParser(prog='apko_oci')
    subcmd_parsers = parser.add_subparsers(
        title='commands',
        required=True,
    )

    parser.add_argument('--docker-cfg', default=None)
    parser.add_argument('--verbose', '-v', action='store_true', default=False)

    build_parser = subcmd_parsers.add_parser(
        'build',
        help='build image and write it as docker-archive',
    )
    build_parser.set_defaults(callable=build)
    _add_build_arguments(build_parser)
    build_parser.add_argument('--tag', '-t', required=True)
    build_parser.add_argument('--output', '-o', required=True)

    publish_parser = subcmd_parsers.add_parser(
        'publish',
        help='build image and publish it',
    )
    publish_parser.set_defaults(callable=publish)
    _add_build_arguments(publish_parser)
    publish_parser.add_argument('--tag', '-t', action='append', required=True)
    publish_parser.add_argument(
        '--local',
        action='store_true',
        default=False,
        help=textwrap.dedent(
            '''\
            write image to local docker-daemon (as apko.local/cache:<digest>), instead of
            publishing to registry
            '''),
    )

    copy_parser = subcmd_parsers.add_parser(
        'copy',
        aliases=('cp',),
        help='copy image (or image-index) between registries',
    )
    copy_parser.set_defaults(callable=copy)
    copy_parser.add_argument('src')
    copy_parser.add_argument('dst')

    parsed = parser.parse_args()

    apko_oci.log.configure_default_logging(
        stdout_level=logging.DEBUG if parsed.verbose else logging.INFO,
    )

    try:
        parsed.callable(parsed)
    except apko_oci.model.ApkoOciError as e:
        logger.error(e)
        sys.exit(1)


if __name__ == '__main__':
    main()
