"""Catalog and DMV queries used by the snapshot collector.

Server-scope statements run as-is. Database-scope statements contain a
``{db}`` placeholder that is replaced with the bracket-quoted database
name (see :func:`for_database`); values are always passed as ``?``
parameters.
"""

from ..core.utils import StringUtils


def for_database(sql: str, database: str) -> str:
    """Fill the ``{db}`` placeholder with a quoted database name."""
    return sql.replace("{db}", StringUtils.quote_identifier(database))


CONNECTIVITY_CHECK = "SELECT 1 AS ok"

# Minutes east of UTC. msdb, DMV and DBCC dates are in server local time.
SERVER_UTC_OFFSET = "SELECT DATEPART(TZOFFSET, SYSDATETIMEOFFSET()) AS utc_offset_minutes"

LIST_DATABASES = """
SELECT d.name
FROM sys.databases AS d
WHERE d.state_desc = 'ONLINE'
  AND d.database_id > 4
  AND d.is_read_only = 0
ORDER BY d.name
"""

# Server scope

CPU_METRICS = """
WITH ring AS (
    SELECT TOP (1)
        CONVERT(xml, record).value(
            '(./Record/SchedulerMonitorEvent/SystemHealth/ProcessUtilization)[1]', 'int'
        ) AS utilization_percent
    FROM sys.dm_os_ring_buffers
    WHERE ring_buffer_type = N'RING_BUFFER_SCHEDULER_MONITOR'
      AND record LIKE N'%<SystemHealth>%'
    ORDER BY [timestamp] DESC
)
SELECT
    ring.utilization_percent,
    (SELECT COUNT(*) FROM sys.dm_os_workers WHERE state = N'RUNNING') AS active_worker_threads,
    (SELECT COUNT(*) FROM sys.dm_exec_requests WHERE session_id > 50) AS active_requests
FROM ring
"""

MEMORY_METRICS = """
SELECT
    MAX(CASE WHEN counter_name = N'Total Server Memory (KB)' THEN cntr_value END) / 1024.0 AS total_server_memory_mb,
    MAX(CASE WHEN counter_name = N'Target Server Memory (KB)' THEN cntr_value END) / 1024.0 AS target_server_memory_mb,
    MAX(CASE WHEN counter_name = N'Database Cache Memory (KB)' THEN cntr_value END) / 1024.0 AS buffer_pool_mb,
    MAX(CASE WHEN counter_name = N'SQL Cache Memory (KB)' THEN cntr_value END) / 1024.0 AS sql_cache_mb,
    (SELECT SUM(pages_kb) / 1024.0 FROM sys.dm_os_memory_clerks
     WHERE type IN (N'CACHESTORE_SQLCP', N'CACHESTORE_OBJCP')) AS plan_cache_mb,
    MAX(CASE WHEN counter_name = N'Page life expectancy'
             AND object_name LIKE N'%Buffer Manager%' THEN cntr_value END) AS page_life_expectancy
FROM sys.dm_os_performance_counters
WHERE counter_name IN (
    N'Total Server Memory (KB)', N'Target Server Memory (KB)', N'Database Cache Memory (KB)',
    N'SQL Cache Memory (KB)', N'Page life expectancy'
)
"""

FILE_IO_STATS = """
SELECT
    DB_NAME(vfs.database_id) AS database_name,
    mf.name AS file_name,
    CAST(vfs.io_stall_read_ms AS float) / NULLIF(vfs.num_of_reads, 0) AS read_latency_ms,
    CAST(vfs.io_stall_write_ms AS float) / NULLIF(vfs.num_of_writes, 0) AS write_latency_ms,
    CAST(vfs.num_of_bytes_read AS float) / NULLIF(vfs.sample_ms / 1000.0, 0) AS read_bytes_per_sec,
    CAST(vfs.num_of_bytes_written AS float) / NULLIF(vfs.sample_ms / 1000.0, 0) AS write_bytes_per_sec
FROM sys.dm_io_virtual_file_stats(NULL, NULL) AS vfs
JOIN sys.master_files AS mf
    ON mf.database_id = vfs.database_id AND mf.file_id = vfs.file_id
"""

WAIT_STATS = """
SELECT TOP (20)
    wait_type,
    wait_time_ms,
    waiting_tasks_count,
    CASE
        WHEN wait_type LIKE N'LCK%' THEN N'Lock'
        WHEN wait_type LIKE N'PAGEIOLATCH%' OR wait_type IN (N'IO_COMPLETION', N'ASYNC_IO_COMPLETION', N'WRITELOG') THEN N'IO'
        WHEN wait_type LIKE N'PAGELATCH%' OR wait_type LIKE N'LATCH%' THEN N'Latch'
        WHEN wait_type IN (N'SOS_SCHEDULER_YIELD', N'THREADPOOL') THEN N'CPU'
        WHEN wait_type LIKE N'CX%' THEN N'Parallelism'
        WHEN wait_type IN (N'RESOURCE_SEMAPHORE', N'CMEMTHREAD') THEN N'Memory'
        WHEN wait_type = N'ASYNC_NETWORK_IO' THEN N'Network'
        ELSE N'Other'
    END AS category
FROM sys.dm_os_wait_stats
WHERE waiting_tasks_count > 0
  AND wait_type NOT IN (
    N'BROKER_EVENTHANDLER', N'BROKER_RECEIVE_WAITFOR', N'BROKER_TASK_STOP', N'BROKER_TO_FLUSH',
    N'CHECKPOINT_QUEUE', N'CLR_AUTO_EVENT', N'CLR_MANUAL_EVENT', N'DIRTY_PAGE_POLL',
    N'DISPATCHER_QUEUE_SEMAPHORE', N'FT_IFTS_SCHEDULER_IDLE_WAIT', N'HADR_FILESTREAM_IOMGR_IOCOMPLETION',
    N'LAZYWRITER_SLEEP', N'LOGMGR_QUEUE', N'ONDEMAND_TASK_QUEUE', N'REQUEST_FOR_DEADLOCK_SEARCH',
    N'SLEEP_TASK', N'SP_SERVER_DIAGNOSTICS_SLEEP', N'SQLTRACE_BUFFER_FLUSH', N'WAITFOR',
    N'XE_DISPATCHER_WAIT', N'XE_TIMER_EVENT', N'QDS_PERSIST_TASK_MAIN_LOOP_SLEEP',
    N'QDS_CLEANUP_STALE_QUERIES_TASK_MAIN_LOOP_SLEEP', N'SLEEP_SYSTEMTASK'
  )
ORDER BY wait_time_ms DESC
"""

BLOCKING_SESSIONS = """
SELECT
    r.session_id,
    r.blocking_session_id,
    r.wait_time AS wait_time_ms,
    r.wait_type,
    DB_NAME(r.database_id) AS database_name,
    t.text AS query_text
FROM sys.dm_exec_requests AS r
OUTER APPLY sys.dm_exec_sql_text(r.sql_handle) AS t
WHERE r.blocking_session_id <> 0
ORDER BY r.wait_time DESC
"""

LONG_RUNNING_QUERIES = """
SELECT
    r.session_id,
    r.total_elapsed_time / 1000.0 AS elapsed_seconds,
    DB_NAME(r.database_id) AS database_name,
    r.status,
    r.command,
    t.text AS query_text,
    s.login_name
FROM sys.dm_exec_requests AS r
JOIN sys.dm_exec_sessions AS s ON s.session_id = r.session_id
OUTER APPLY sys.dm_exec_sql_text(r.sql_handle) AS t
WHERE r.session_id <> @@SPID
  AND s.is_user_process = 1
  AND r.total_elapsed_time / 1000.0 > ?
ORDER BY r.total_elapsed_time DESC
"""

# Database scope

DATABASE_INFO = """
SELECT
    d.name,
    d.recovery_model_desc AS recovery_model,
    d.compatibility_level,
    d.is_encrypted,
    d.state_desc AS state,
    d.is_query_store_on AS query_store_enabled,
    (SELECT SUM(CAST(mf.size AS bigint)) * 8 / 1024.0
     FROM sys.master_files AS mf WHERE mf.database_id = d.database_id) AS size_mb
FROM sys.databases AS d
WHERE d.name = ?
"""

DATABASE_FILES = """
EXEC {db}.sys.sp_executesql N'
SELECT
    f.name AS logical_name,
    f.type_desc,
    f.physical_name,
    f.size * 8 / 1024.0 AS size_mb,
    CASE WHEN f.max_size IN (-1, 268435456) THEN -1 ELSE f.max_size * 8 / 1024.0 END AS max_size_mb,
    f.is_percent_growth,
    CASE WHEN f.is_percent_growth = 1 THEN f.growth ELSE f.growth * 8 / 1024.0 END AS growth_value,
    CAST(FILEPROPERTY(f.name, ''SpaceUsed'') AS float) * 100.0 / NULLIF(f.size, 0) AS used_percent
FROM sys.database_files AS f'
"""

LAST_BACKUPS = """
SELECT
    MAX(CASE WHEN bs.type = 'D' THEN bs.backup_finish_date END) AS last_full_backup,
    MAX(CASE WHEN bs.type = 'I' THEN bs.backup_finish_date END) AS last_differential_backup,
    MAX(CASE WHEN bs.type = 'L' THEN bs.backup_finish_date END) AS last_log_backup
FROM msdb.dbo.backupset AS bs
WHERE bs.database_name = ?
"""

BACKUP_HISTORY = """
SELECT
    bs.type AS backup_type,
    bs.backup_finish_date AS finish_time,
    bs.backup_size / 1048576.0 AS size_mb,
    CAST(bs.has_backup_checksums AS bit) AS is_verified
FROM msdb.dbo.backupset AS bs
WHERE bs.database_name = ?
  AND bs.backup_finish_date >= DATEADD(day, -?, GETDATE())
ORDER BY bs.backup_finish_date
"""

TABLES = """
SELECT
    s.name AS schema_name,
    t.name AS table_name,
    SUM(CASE WHEN p.index_id IN (0, 1) THEN p.rows ELSE 0 END) AS row_count,
    CASE WHEN COUNT(DISTINCT p.partition_number) > 1 THEN 1 ELSE 0 END AS is_partitioned
FROM {db}.sys.tables AS t
JOIN {db}.sys.schemas AS s ON s.schema_id = t.schema_id
JOIN {db}.sys.partitions AS p ON p.object_id = t.object_id
WHERE t.is_ms_shipped = 0
GROUP BY s.name, t.name
"""

COLUMNS = """
SELECT
    s.name AS schema_name,
    t.name AS table_name,
    c.name AS column_name,
    ty.name AS data_type,
    c.max_length,
    c.is_nullable,
    c.is_identity
FROM {db}.sys.columns AS c
JOIN {db}.sys.tables AS t ON t.object_id = c.object_id
JOIN {db}.sys.schemas AS s ON s.schema_id = t.schema_id
JOIN {db}.sys.types AS ty ON ty.user_type_id = c.user_type_id
WHERE t.is_ms_shipped = 0
ORDER BY s.name, t.name, c.column_id
"""

INDEXES = """
SELECT
    s.name AS schema_name,
    t.name AS table_name,
    i.name AS index_name,
    i.type_desc AS index_type,
    i.is_primary_key,
    i.is_unique,
    (SELECT STRING_AGG(c.name, ',') WITHIN GROUP (ORDER BY ic.key_ordinal)
     FROM {db}.sys.index_columns AS ic
     JOIN {db}.sys.columns AS c ON c.object_id = ic.object_id AND c.column_id = ic.column_id
     WHERE ic.object_id = i.object_id AND ic.index_id = i.index_id AND ic.is_included_column = 0
    ) AS key_columns,
    (SELECT STRING_AGG(c.name, ',') WITHIN GROUP (ORDER BY c.name)
     FROM {db}.sys.index_columns AS ic
     JOIN {db}.sys.columns AS c ON c.object_id = ic.object_id AND c.column_id = ic.column_id
     WHERE ic.object_id = i.object_id AND ic.index_id = i.index_id AND ic.is_included_column = 1
    ) AS included_columns,
    ISNULL(us.user_seeks, 0) AS user_seeks,
    ISNULL(us.user_scans, 0) AS user_scans,
    ISNULL(us.user_lookups, 0) AS user_lookups,
    ISNULL(us.user_updates, 0) AS user_updates,
    us.last_user_seek,
    us.last_user_scan,
    us.last_user_lookup
FROM {db}.sys.indexes AS i
JOIN {db}.sys.tables AS t ON t.object_id = i.object_id
JOIN {db}.sys.schemas AS s ON s.schema_id = t.schema_id
LEFT JOIN sys.dm_db_index_usage_stats AS us
    ON us.database_id = DB_ID(?) AND us.object_id = i.object_id AND us.index_id = i.index_id
WHERE t.is_ms_shipped = 0 AND i.type > 0 AND i.is_hypothetical = 0
"""

INDEX_FRAGMENTATION = """
SELECT
    s.name AS schema_name,
    t.name AS table_name,
    i.name AS index_name,
    ps.avg_fragmentation_in_percent AS fragmentation_percent,
    ps.page_count
FROM sys.dm_db_index_physical_stats(DB_ID(?), NULL, NULL, NULL, 'LIMITED') AS ps
JOIN {db}.sys.indexes AS i ON i.object_id = ps.object_id AND i.index_id = ps.index_id
JOIN {db}.sys.tables AS t ON t.object_id = i.object_id
JOIN {db}.sys.schemas AS s ON s.schema_id = t.schema_id
WHERE ps.index_id > 0 AND ps.page_count > 100
"""

FOREIGN_KEYS = """
SELECT
    s.name AS schema_name,
    t.name AS table_name,
    fk.name AS constraint_name,
    (SELECT STRING_AGG(c.name, ',') WITHIN GROUP (ORDER BY fkc.constraint_column_id)
     FROM {db}.sys.foreign_key_columns AS fkc
     JOIN {db}.sys.columns AS c ON c.object_id = fkc.parent_object_id AND c.column_id = fkc.parent_column_id
     WHERE fkc.constraint_object_id = fk.object_id
    ) AS column_names,
    rs.name + N'.' + rt.name AS referenced_table,
    fk.is_disabled,
    fk.is_not_trusted
FROM {db}.sys.foreign_keys AS fk
JOIN {db}.sys.tables AS t ON t.object_id = fk.parent_object_id
JOIN {db}.sys.schemas AS s ON s.schema_id = t.schema_id
JOIN {db}.sys.tables AS rt ON rt.object_id = fk.referenced_object_id
JOIN {db}.sys.schemas AS rs ON rs.schema_id = rt.schema_id
"""

IDENTITY_COLUMNS = """
SELECT
    s.name AS schema_name,
    t.name AS table_name,
    ic.name AS column_name,
    ty.name AS data_type,
    CAST(ic.last_value AS bigint) AS current_value,
    CAST(ic.seed_value AS bigint) AS seed,
    CAST(ic.increment_value AS bigint) AS increment
FROM {db}.sys.identity_columns AS ic
JOIN {db}.sys.tables AS t ON t.object_id = ic.object_id
JOIN {db}.sys.schemas AS s ON s.schema_id = t.schema_id
JOIN {db}.sys.types AS ty ON ty.user_type_id = ic.user_type_id
WHERE t.is_ms_shipped = 0
"""

INTEGRITY_LAST_KNOWN_GOOD = "DBCC DBINFO ({literal}) WITH TABLERESULTS, NO_INFOMSGS"

SUSPECT_PAGES = """
SELECT COUNT(*) AS suspect_pages
FROM msdb.dbo.suspect_pages
WHERE database_id = DB_ID(?) AND event_type IN (1, 2, 3)
"""

AGENT_JOBS = """
SELECT DISTINCT
    j.name AS job_name,
    j.enabled,
    c.name AS category,
    last_run.run_datetime AS last_run_date,
    CASE last_run.run_status
        WHEN 0 THEN 'Failed' WHEN 1 THEN 'Succeeded' WHEN 2 THEN 'Retry'
        WHEN 3 THEN 'Canceled' ELSE 'Unknown'
    END AS last_run_outcome,
    last_run.message AS last_failure_message
FROM msdb.dbo.sysjobs AS j
JOIN msdb.dbo.sysjobsteps AS st ON st.job_id = j.job_id
JOIN msdb.dbo.syscategories AS c ON c.category_id = j.category_id
OUTER APPLY (
    SELECT TOP (1)
        h.run_status,
        h.message,
        msdb.dbo.agent_datetime(h.run_date, h.run_time) AS run_datetime
    FROM msdb.dbo.sysjobhistory AS h
    WHERE h.job_id = j.job_id AND h.step_id = 0
    ORDER BY h.run_date DESC, h.run_time DESC
) AS last_run
WHERE st.database_name = ?
"""

LONG_TRANSACTIONS = """
SELECT
    st.session_id,
    DATEDIFF(second, at.transaction_begin_time, GETDATE()) AS duration_seconds,
    at.name AS transaction_name,
    s.login_name
FROM sys.dm_tran_active_transactions AS at
JOIN sys.dm_tran_session_transactions AS st ON st.transaction_id = at.transaction_id
JOIN sys.dm_tran_database_transactions AS dt ON dt.transaction_id = at.transaction_id
JOIN sys.dm_exec_sessions AS s ON s.session_id = st.session_id
WHERE dt.database_id = DB_ID(?)
  AND DATEDIFF(second, at.transaction_begin_time, GETDATE()) > ?
"""

GUEST_PERMISSIONS = """
SELECT p.permission_name
FROM {db}.sys.database_permissions AS p
JOIN {db}.sys.database_principals AS pr ON pr.principal_id = p.grantee_principal_id
WHERE pr.name = N'guest' AND p.state IN ('G', 'W')
"""

POWER_USERS = """
SELECT m.name AS principal_name, r.name AS role_name
FROM {db}.sys.database_role_members AS rm
JOIN {db}.sys.database_principals AS r ON r.principal_id = rm.role_principal_id
JOIN {db}.sys.database_principals AS m ON m.principal_id = rm.member_principal_id
WHERE r.name IN (N'db_owner', N'db_securityadmin', N'db_accessadmin', N'db_ddladmin')
  AND m.name <> N'dbo'
"""

SENSITIVE_COLUMNS = """
SELECT
    s.name AS schema_name,
    t.name AS table_name,
    c.name AS column_name,
    ty.name AS data_type,
    CASE WHEN c.encryption_type IS NOT NULL THEN 1 ELSE 0 END AS is_encrypted
FROM {db}.sys.columns AS c
JOIN {db}.sys.tables AS t ON t.object_id = c.object_id
JOIN {db}.sys.schemas AS s ON s.schema_id = t.schema_id
JOIN {db}.sys.types AS ty ON ty.user_type_id = c.user_type_id
WHERE t.is_ms_shipped = 0
  AND (
    c.name LIKE N'%password%' OR c.name LIKE N'%ssn%' OR c.name LIKE N'%social%security%'
    OR c.name LIKE N'%credit%card%' OR c.name LIKE N'%card%number%' OR c.name LIKE N'%tax%id%'
    OR c.name LIKE N'%birth%' OR c.name LIKE N'%salary%' OR c.name LIKE N'%account%number%'
  )
"""

MODULES = """
SELECT
    s.name AS schema_name,
    o.name AS module_name,
    o.type_desc,
    m.definition
FROM {db}.sys.sql_modules AS m
JOIN {db}.sys.objects AS o ON o.object_id = m.object_id
JOIN {db}.sys.schemas AS s ON s.schema_id = o.schema_id
WHERE o.is_ms_shipped = 0
  AND o.type IN ('P', 'FN', 'IF', 'TF', 'TR')
"""
