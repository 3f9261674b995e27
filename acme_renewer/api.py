"""
Certificate renewer HTTP API
"""
import signal
from datetime import timedelta

import flask

from acme_renewer.acme_requests import ACMEError
from acme_renewer.config import RenewerConfig
from acme_renewer.dns import DNSError
from acme_renewer.renewer import (PATHS, CertificateUnavailableError, InvalidArgumentError,
                                  PostUploadVerificationError, ProfileNotFoundError, build_renewer)
from acme_renewer.secret_store import SecretStoreError

FORCE_VALUES = {
    'true': True,
    'false': False,
}

# checked in order, subclasses must appear before their base classes
ERROR_STATUS_CODES = (
    (InvalidArgumentError, 400),
    (ProfileNotFoundError, 404),
    (CertificateUnavailableError, 503),
    (SecretStoreError, 503),
    (PostUploadVerificationError, 502),
    (ACMEError, 502),
    (DNSError, 502),
)


def abort(status_code, reason):
    """Raise an error with a customized response data"""
    flask.abort(flask.make_response(reason, status_code))


def get_status_code(error):
    """Returns the HTTP status code reported for error"""
    for error_class, status_code in ERROR_STATUS_CODES:
        if isinstance(error, error_class):
            return status_code
    return 500


def create_app(config_path=PATHS['config'], renewer=None):
    """Creates the flask app with the embedded CertificateRenewer"""
    app = flask.Flask(__name__)

    state = {'renewer': renewer}

    def sighup_handler(*_):
        """
        When receiving SIGHUP signals, reload config.
        """
        app.logger.info("SIGHUP received")
        state['renewer'] = build_renewer(RenewerConfig.load(config_path))

    if state['renewer'] is None:
        signal.signal(signal.SIGHUP, sighup_handler)
        sighup_handler()

    def call(name, func, *args, **kwargs):
        """Runs func turning the renewer errors into HTTP errors"""
        try:
            return func(*args, **kwargs)
        except Exception as error:  # pylint: disable=broad-except
            status_code = get_status_code(error)
            if status_code == 500:
                app.logger.exception("Unexpected error handling certificate %s", name)
                abort(500, 'internal error')
            app.logger.error("Error handling certificate %s: %s", name, error)
            abort(status_code, str(error))

    @app.route("/certificates/<name>", methods=['GET'])
    def get_certificate(name):  # pylint: disable=unused-variable
        """Returns the certificate currently stored for the certificate profile called name"""
        app.logger.info("Client %s requested certificate %s", flask.request.remote_addr, name)
        record = call(name, state['renewer'].get_certificate, name)
        return flask.jsonify(record.to_dict())

    @app.route("/certificates/<name>/status", methods=['GET'])
    def get_certificate_status(name):  # pylint: disable=unused-variable
        """Same as get_certificate but expired certificates are reported with a 403"""
        renewer = state['renewer']
        record = call(name, renewer.get_certificate, name)
        status_code = 403 if renewer.is_expiring_within(record, timedelta(0)) else 200
        return flask.jsonify(record.to_dict()), status_code

    @app.route("/certificates/<name>", methods=['POST'])
    def renew_certificate(name):  # pylint: disable=unused-variable
        """Renews the certificate profile called name. 204 is returned if it isn't due for renewal"""
        force = flask.request.args.get('force', 'false')
        if force.lower() not in FORCE_VALUES:
            abort(400, 'force must be true or false')
        force = FORCE_VALUES[force.lower()]

        app.logger.info("Client %s requested the renewal of %s (force=%s)", flask.request.remote_addr, name, force)
        record = call(name, state['renewer'].renew, name, force=force)
        if record is None:
            return flask.Response(status=204)

        return flask.jsonify(record.to_dict())

    return app


if __name__ == '__main__':
    create_app().run()
