from pathlib import Path

from mtnorm.utils.logging import logger


class Workflow:
    def __init__(self, *, force=False):
        """Initialize the basic workflow object.

        This object takes care of any workflow operation that is common to all
        the workflows. Every new workflow should extend this class.
        """
        self._force_overwrite = force
        self.flat_outputs = []
        self.last_generated_outputs = None

    def set_outputs(self, outputs):
        """Register the output files the workflow is about to write.

        Parameters
        ----------
        outputs : dict
            Output paths keyed by a short description.

        Returns
        -------
        proceed : bool
            False if some outputs exist and overwriting was not allowed.
        """
        self.last_generated_outputs = dict(outputs)
        self.flat_outputs = [str(path) for path in outputs.values()]
        return self.manage_output_overwrite()

    def manage_output_overwrite(self):
        """Check if a file will be overwritten upon processing the inputs.

        If it is bound to happen, an action is taken depending on
        self._force_overwrite (or --force via command line). A log message is
        output independently of the outcome to tell the user something
        happened.
        """
        duplicates = []
        for output in self.flat_outputs:
            if Path(output).is_file():
                duplicates.append(output)

        if len(duplicates) > 0:
            if self._force_overwrite:
                logger.info("The following output files are about to be overwritten.")
            else:
                logger.info(
                    "The following output files already exist, the "
                    "workflow will not continue processing any "
                    "further. Add the --force flag to allow output "
                    "files overwrite."
                )

            for dup in duplicates:
                logger.info(dup)

            return self._force_overwrite

        return True

    def run(self, *args, **kwargs):
        """Execute the workflow.

        Since this is an abstract class, raise exception if this code is
        reached (not implemented in child class or literally called on this
        class)
        """
        raise NotImplementedError(f"Error: {self.__class__} does not have a run method.")

    @classmethod
    def get_short_name(cls):
        """Return a short name for the workflow.

        Returns class name by default; subclasses set something shorter that
        is used as the command line program name.
        """
        return cls.__name__
