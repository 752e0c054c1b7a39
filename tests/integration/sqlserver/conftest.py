import logging
import time

import autotvp
import config
import pytest
import sqlalchemy as sa

logger = logging.getLogger(__name__)

CONTAINER_NAME = 'test_autotvp_sqlserver'


def odbc_connection_string(database='master'):
    return (
        f'DRIVER={{{config.mssql.driver}}};'
        f'SERVER={config.mssql.hostname},{config.mssql.port};'
        f'DATABASE={database};'
        f'UID={config.mssql.username};'
        f'PWD={config.mssql.password};'
        f'Connection Timeout={config.mssql.timeout or 5};'
        f'TrustServerCertificate={config.mssql.trust_server_certificate or "yes"};'
    )


@pytest.fixture(scope='session')
def sqlserver_docker(request):
    docker = pytest.importorskip('docker')
    pyodbc = pytest.importorskip('pyodbc')

    if config.mssql.driver not in pyodbc.drivers():
        pytest.skip(f'ODBC driver {config.mssql.driver!r} not installed')
    try:
        client = docker.from_env()
        client.ping()
    except docker.errors.DockerException as e:
        pytest.skip(f'Docker unavailable: {e}')

    # Check if container already exists and remove it
    try:
        old_container = client.containers.get(CONTAINER_NAME)
        logger.info('Found existing test container, removing it')
        old_container.stop()
        old_container.remove()
    except docker.errors.NotFound:
        pass
    except Exception as e:
        logger.warning(f'Error when cleaning up container: {e}')

    container = client.containers.run(
        image='mcr.microsoft.com/mssql/server:2022-latest',
        environment={
            'ACCEPT_EULA': 'Y',
            'MSSQL_SA_PASSWORD': config.mssql.password,
            'MSSQL_PID': 'Developer',
        },
        name=CONTAINER_NAME,
        ports={'1433/tcp': str(config.mssql.port)},
        detach=True,
        remove=True,
    )

    # Register finalizer to ensure container is cleaned up after all tests
    def finalizer():
        try:
            container.stop()
        except Exception as e:
            logger.warning(f'Error stopping container during cleanup: {e}')

    request.addfinalizer(finalizer)

    logger.info('Waiting for SQL Server to initialize...')
    time.sleep(5)

    for _ in range(60):
        try:
            conn = pyodbc.connect(odbc_connection_string())
            conn.close()
            logger.info('SQL Server is ready')
            break
        except pyodbc.Error as e:
            logger.info(f'Waiting for SQL Server to start: {e}')
            time.sleep(2)
    else:
        raise Exception('SQL Server container failed to start in time')

    return container


@pytest.fixture(scope='session')
def sqlserver_engine(sqlserver_docker):
    url = sa.engine.URL.create(
        'mssql+pyodbc',
        username=config.mssql.username,
        password=config.mssql.password,
        host=config.mssql.hostname,
        port=config.mssql.port,
        database=config.mssql.database,
        query={'driver': config.mssql.driver, 'TrustServerCertificate': 'yes'},
        )
    engine = sa.create_engine(url)
    yield engine
    engine.dispose()


@pytest.fixture
def sconn(sqlserver_engine):
    """
    Connection fixture with function scope and a private type creation cache
    that creates the udtts schema on demand.
    """
    cache = autotvp.TypeCreationCache(autotvp.TvpOptions(create_schema=True))
    cn = autotvp.connect(sqlserver_engine, cache=cache)
    try:
        yield cn
    finally:
        try:
            cn.rollback()
            cn.close()
        except Exception as e:
            logger.warning(f'Error during connection cleanup: {e}')
