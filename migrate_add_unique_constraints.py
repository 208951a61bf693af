#!/usr/bin/env python3
"""
Database migration script to add the uniqueness guarantees the marketplace relies on:
  - one contract per proposal
  - one payment per contract
  - one proposal per freelancer per project
  - one review per reviewer per contract

Safe to run more than once. Existing unique indexes are detected and skipped.
"""
from app import app, db
from sqlalchemy import text

# index name -> (table, columns)
UNIQUE_INDEXES = {
    'uq_contract_proposal_id': ('contract', ('proposal_id',)),
    'uq_payment_contract_id': ('payment', ('contract_id',)),
    'uq_proposal_project_freelancer': ('proposal', ('project_id', 'freelancer_id')),
    'uq_review_contract_reviewer': ('review', ('contract_id', 'reviewer_id')),
}

def _unique_column_sets(table, is_postgres):
    """Column sets already covered by a unique index on the table"""
    column_sets = []
    if is_postgres:
        result = db.session.execute(text(
            "SELECT array_agg(a.attname::text) FROM pg_index i "
            "JOIN pg_class t ON t.oid = i.indrelid "
            "JOIN pg_attribute a ON a.attrelid = t.oid AND a.attnum = ANY(i.indkey) "
            "WHERE t.relname = :table AND i.indisunique "
            "GROUP BY i.indexrelid"
        ), {'table': table})
        for row in result.fetchall():
            column_sets.append(set(row[0]))
    else:
        indexes = db.session.execute(text(f"PRAGMA index_list('{table}')")).fetchall()
        for index in indexes:
            # (seq, name, unique, origin, partial)
            if not index[2]:
                continue
            info = db.session.execute(text(f"PRAGMA index_info('{index[1]}')")).fetchall()
            column_sets.append({row[2] for row in info})
    return column_sets

def _duplicate_count(table, columns):
    cols = ', '.join(columns)
    result = db.session.execute(text(
        f"SELECT {cols}, COUNT(*) FROM {table} GROUP BY {cols} HAVING COUNT(*) > 1"
    ))
    return len(result.fetchall())

def migrate():
    with app.app_context():
        try:
            print("Starting migration...")

            # Detect database type
            db_uri = app.config['SQLALCHEMY_DATABASE_URI']
            is_postgres = 'postgres' in db_uri.lower()
            is_sqlite = db_uri.startswith('sqlite')

            if not is_postgres and not is_sqlite:
                print("❌ Unknown database type")
                return False

            # Make sure every table exists before indexing it
            db.create_all()

            created = []
            for index_name, (table, columns) in UNIQUE_INDEXES.items():
                if set(columns) in _unique_column_sets(table, is_postgres):
                    print(f"⚠️  {table}({', '.join(columns)}) is already unique. Skipping.")
                    continue

                duplicates = _duplicate_count(table, columns)
                if duplicates:
                    print(f"❌ {table} has {duplicates} duplicate group(s) on ({', '.join(columns)}). "
                          "Resolve them before running this migration.")
                    db.session.rollback()
                    return False

                db.session.execute(text(
                    f"CREATE UNIQUE INDEX IF NOT EXISTS {index_name} ON {table} ({', '.join(columns)})"
                ))
                created.append(index_name)

            db.session.commit()

            print("\n✅ Migration completed successfully!")
            print("\n📝 Summary:")
            if created:
                for index_name in created:
                    print(f"   - Created unique index {index_name}")
            else:
                print("   - All uniqueness constraints were already in place")
            return True

        except Exception as e:
            print(f"❌ Migration failed: {e}")
            db.session.rollback()
            return False

if __name__ == '__main__':
    success = migrate()
    exit(0 if success else 1)
