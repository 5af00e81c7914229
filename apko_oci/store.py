'''
local image-stores (i.e. a docker-daemon) that single-platform images can be written to
'''

import abc
import logging
import subprocess
import tempfile

import apko_oci.image as oimg
import apko_oci.model as om
import apko_oci.tarball as ot

logger = logging.getLogger(__name__)


class LocalStoreError(Exception):
    def __init__(self, *args, response: str=''):
        super().__init__(*args)
        self.response = response


class LocalStore(abc.ABC):
    @abc.abstractmethod
    def write(self, tag: om.OciImageReference, image: oimg.Image) -> str:
        '''
        writes the given image into the local store, tagged w/ the given tag. Returns the
        store's response. Raises LocalStoreError on failure.
        '''
        pass

    @abc.abstractmethod
    def tag(self, src: om.OciImageReference, tgt: om.OciImageReference):
        '''
        tags the (existing) image `src` as `tgt`. Raises LocalStoreError on failure.
        '''
        pass


class DockerDaemonStore(LocalStore):
    def __init__(
        self,
        docker_executable: str='docker',
        cfg_dir: str=None,
    ):
        self.docker_executable = docker_executable
        self.cfg_dir = cfg_dir

    def _docker_argv(self, *argv) -> tuple[str]:
        docker_argv = [self.docker_executable]

        if self.cfg_dir:
            docker_argv.extend(('--config', self.cfg_dir))

        docker_argv.extend(argv)

        return tuple(docker_argv)

    def _run(self, argv, stdin=None) -> str:
        logger.debug(f'running {argv=}')
        try:
            res = subprocess.run(
                argv,
                stdin=stdin,
                capture_output=True,
                text=True,
            )
        except OSError as oe:
            raise LocalStoreError(f'failed to run {argv=}: {oe}') from oe

        response = res.stdout + res.stderr
        if res.returncode != 0:
            raise LocalStoreError(
                f'{argv=} failed with {res.returncode=}',
                response=response,
            )

        return response

    def write(self, tag: om.OciImageReference, image: oimg.Image) -> str:
        with tempfile.TemporaryFile() as tf:
            ot.write_image_tarball(
                fileobj=tf,
                image=image,
                tags=(tag,),
            )
            tf.seek(0)

            return self._run(self._docker_argv('load'), stdin=tf)

    def tag(self, src: om.OciImageReference, tgt: om.OciImageReference):
        self._run(self._docker_argv(
            'tag',
            src.original_image_reference,
            tgt.original_image_reference,
        ))
